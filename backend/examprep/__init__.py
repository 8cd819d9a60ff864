"""Assessment attempt and adaptive feedback backend for the exam-prep platform.

The package exposes the FastAPI application (`examprep.main`) together with
the services, repositories and models behind quiz attempts, the hint
ledger, scoring, analytics and adaptive difficulty profiles. Pure
computations live in `examprep.utils` so they can be exercised without a
database.
"""
