"""CLI script to insert a demo quiz covering every question type.

Usage: python scripts/seed_demo.py [--max-attempts N] [--cooldown-minutes M]
"""
import sys
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `examprep` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from examprep.database import engine, create_db_and_tables
from examprep import models, repositories

DEMO_QUESTIONS = [
    {
        'question_text': 'Which data structure gives O(1) average lookup by key?',
        'question_type': 'multiple_choice',
        'options': ['Linked list', 'Hash table', 'Binary heap', 'Stack'],
        'correct_answer': 'Hash table',
        'steps': ['Think about how keys map to positions', 'Hashing computes the position directly'],
        'difficulty': 'easy',
    },
    {
        'question_text': 'A binary search requires the input to be sorted.',
        'question_type': 'true_false',
        'options': ['true', 'false'],
        'correct_answer': 'true',
        'steps': ['Recall how the midpoint comparison discards half of the range'],
        'difficulty': 'easy',
    },
    {
        'question_text': 'What keyword defines a function in Python?',
        'question_type': 'short_answer',
        'correct_answer': 'def',
        'steps': ['It is a three letter keyword', 'It is short for "define"'],
        'difficulty': 'medium',
    },
    {
        'question_text': 'Explain the trade-offs between recursion and iteration.',
        'question_type': 'essay',
        'steps': ['Consider stack usage', 'Consider readability', 'Consider tail calls'],
        'difficulty': 'hard',
        'points': 5,
    },
]


def main(max_attempts: int = 3, cooldown_minutes: int = 0):
    """Create the demo topic, resource, questions and quiz; print their ids."""
    create_db_and_tables()
    with Session(engine) as session:
        topic = models.Topic(title='Algorithms basics', subject='Software Development')
        resource = models.Resource(title='Big-O cheat sheet', url='https://www.bigocheatsheet.com/')
        session.add(topic)
        session.add(resource)
        session.commit()
        session.refresh(topic)
        session.refresh(resource)
        repo = repositories.QuizRepository(session)
        ids = []
        for item in DEMO_QUESTIONS:
            q = repo.create_question(models.Question(topic_id=topic.id, subject=topic.subject, **item))
            ids.append(q.id)
        quiz = repo.create(models.Quiz(
            title='Demo quiz',
            difficulty='medium',
            question_ids=ids,
            max_attempts=max_attempts,
            cooldown_minutes=cooldown_minutes,
        ))
        print(f'Created quiz {quiz.id} with questions {ids}')
        print(f'Topic id {topic.id}, resource id {resource.id}')


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--max-attempts', type=int, default=3, help='0 for unlimited attempts')
    parser.add_argument('--cooldown-minutes', type=int, default=0)
    args = parser.parse_args()
    main(max_attempts=args.max_attempts, cooldown_minutes=args.cooldown_minutes)
