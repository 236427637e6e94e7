"""Conversation pipeline orchestration core.

Turns a recorded conversation into a software project: analysis, plan,
build trigger and build tracking, driven by a durable task queue in
PostgreSQL. The API process lives in app.main, workers in app.worker.
"""
