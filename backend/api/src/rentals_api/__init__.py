"""FastAPI application for the rental orchestration engine."""
