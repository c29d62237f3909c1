"""
Memory Engineering - Durable, searchable project memory for AI coding assistants.

Named memory documents plus a semantic index of the project's source code,
served over MCP.
"""

__version__ = "1.0.0"
