"""Support ticket lifecycle engine."""
