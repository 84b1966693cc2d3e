"""
Agentic Tab - a streaming agent engine for a browser tab.

Drives an LLM that narrates and issues tool directives, gates sensitive
actions behind human approval and recovers from transient backend failures.
"""

__version__ = "0.1.0"
__author__ = "Agentic Tab Contributors"
