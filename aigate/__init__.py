"""
AIGate - AI Request Gating Pipeline

Sits between inbound requests for AI-generated learning artifacts
(quizzes, flashcards, summaries, course outlines) and the model providers
that generate them: builds a trusted request context, gates and meters
credits, selects an authenticated provider and records an audit trail.
"""

__version__ = "1.0.0"
__author__ = "AIGate"
