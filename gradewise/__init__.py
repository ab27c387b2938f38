"""Gradewise - grounded teaching assistant backend.

Keeps running class and student performance statistics as grades are
recorded, indexes them for semantic retrieval, and answers teacher questions
through a streamed, tool-aware Gemini conversation.
"""
__version__ = "1.0.0"
