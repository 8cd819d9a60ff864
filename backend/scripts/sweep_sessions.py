"""CLI script to abandon idle in-progress attempt sessions.

Intended to be run by an external scheduler (cron, systemd timer).
Usage: python scripts/sweep_sessions.py [--idle-minutes N]
"""
import sys
import argparse
import logging
import pathlib
from typing import Optional
# Ensure `backend/` is on sys.path so `examprep` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from examprep.config import settings
from examprep.database import engine, create_db_and_tables
from examprep import services


def main(idle_minutes: Optional[int] = None) -> int:
    """Abandon sessions idle longer than `idle_minutes` and print the count."""
    create_db_and_tables()
    minutes = idle_minutes or settings.SESSION_IDLE_MINUTES
    with Session(engine) as session:
        count = services.AttemptService(session, logger=logging.getLogger("examprep.sweep")).abandon_idle_sessions(minutes)
    print(f'Abandoned {count} session(s) idle for more than {minutes} minutes')
    return count


if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL)
    parser = argparse.ArgumentParser()
    parser.add_argument('--idle-minutes', type=int, help='Idle threshold (default: SESSION_IDLE_MINUTES)')
    args = parser.parse_args()
    main(idle_minutes=args.idle_minutes)
