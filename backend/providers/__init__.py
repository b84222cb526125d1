"""
Category data providers.

A provider answers "which entities of this category lie inside these bounds" for one
backend. The orchestrator only knows providers through `CategoryProvider`; how each one
talks to its backend (WFS, REST rows, files) stays behind that protocol.
"""
