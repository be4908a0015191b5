"""mdkanban - markdown task files projected onto a kanban card database."""

__version__ = "0.1.0"
