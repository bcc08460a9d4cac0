"""Task loop orchestrator for CLI coding agents.

A task document declares work items together with a completion promise and a
validation command.  The orchestrator drives the agent through repeated
iterations until the validation output satisfies the promise or the
iteration ceiling is reached:

- Sequential mode runs every task in the repository working directory.
- Parallel mode partitions tasks by group.  Group 0 runs first and
  sequentially; every other group runs concurrently, one git worktree per
  task, and the resulting branches are merged back one at a time.

Merge conflicts are handed to a pluggable ``ConflictResolver``; the default
one asks the agent to rewrite each conflicted file and fails closed when any
conflict marker survives.
"""
