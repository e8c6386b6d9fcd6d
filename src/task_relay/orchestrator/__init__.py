"""Task routing, dispatch and lifecycle reconciliation over a shared filesystem.

Workers are external processes that read one task file from their mailbox
and drop one result file into the outbox.  This package owns everything in
between: deciding which worker gets a task, writing the hand-off, keeping
the durable task record in step with what the filesystem says happened,
and watching worker liveness.

Coordination is deliberately file-based.  Every handled file is moved out
of the directory it was discovered in, so the watcher and the backup poll
can both see the same path without the task being processed twice.
"""
