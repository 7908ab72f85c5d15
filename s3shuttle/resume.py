"""Decides which replayed work items a resumed session still has to perform."""


class ResumeFilter:
    """
    Classifies work items, in replay order, as done or not done.

    Everything up to and including the checkpoint item is done. This only
    holds if items are replayed in the order they were checkpointed in,
    which the write-once session data file guarantees. Reordering replays
    either repeats finished items or, worse, skips unfinished ones.
    """

    def __init__(self, checkpoint: str = ''):
        self.checkpoint = checkpoint or ''
        self.passed = not self.checkpoint

    def should_skip(self, item_id: str) -> bool:
        if not item_id:
            raise ValueError("Empty work item identifier.")
        if self.passed:
            return False
        if item_id == self.checkpoint:
            self.passed = True
        return True

    def __repr__(self) -> str:
        return f"ResumeFilter(checkpoint={self.checkpoint!r}, passed={self.passed})"
