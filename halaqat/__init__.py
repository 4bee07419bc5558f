"""Halaqat dashboard backend: students, teachers, circles, attendance and memorization."""

__version__ = "1.0.0"
