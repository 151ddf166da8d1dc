"""Iteration orchestration engine.

One loop, four collaborators: the task graph resolver picks the next
runnable task, the CLI backend runs the agent against it, the ledger records
the outcome, and the checkpointer commits the workspace.  Everything durable
lives in plain files inside the workspace (task document, progress ledger,
``.taskloop/`` session files) so a run can be killed at any point and resumed
by the next invocation.
"""
