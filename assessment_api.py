"""
Assessment Engine API — Main Application
FastAPI application that assembles reproducible multiple-choice exams,
serves them with scrambled choice order, and grades submissions.
"""

from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database.database import engine, Base
from database import models  # noqa: F401  (registers tables on Base)
from routers import quiz

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)s  %(name)s  %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables."""
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Assessment Engine API",
    description="Exam assembly, choice scrambling, grading and attempt tracking",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Routers ───────────────────────────────────────────────────────────────────

app.include_router(quiz.router)               # /lms/quiz/*


@app.get("/")
def root():
    return {
        "name": "Assessment Engine API",
        "version": "1.0.0",
        "endpoints": {
            "docs": "/docs",
            "quiz": "/lms/quiz",
            "submit": "/lms/quiz/submit",
            "autosave": "/lms/quiz/{examId}/answers",
            "attempt": "/lms/quiz/{examId}/attempt",
        },
    }


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "assessment-engine-api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
