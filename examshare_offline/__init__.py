"""Offline submission queue and caching edge proxy for ExamShare."""

__version__ = "1.0.0"
