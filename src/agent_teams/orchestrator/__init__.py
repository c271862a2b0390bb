"""Team orchestration: decomposition, assignment, review cycle and checkpointed recovery."""
