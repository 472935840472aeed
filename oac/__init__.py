"""OAC - execution engine for open agent contributions.

Dispatches repository tasks to external coding-agent CLIs, each job in its
own git worktree.
"""

__version__ = "0.1.0"
