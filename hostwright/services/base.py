"""Common base for the managers that own one kind of host resource."""

import copy


class HostManager:
    """A manager talks to one host through an executor and remembers prior state for undo."""

    def __init__(self, executor, settings):
        self.executor = executor
        self.settings = settings
        # name -> content before this run first touched it (None = absent)
        self._originals = {}

    def bind(self, executor):
        """Return this manager talking through *executor*, sharing saved prior state."""
        bound = copy.copy(self)
        bound.executor = executor
        return bound
