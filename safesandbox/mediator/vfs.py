"""In-memory filesystem served by the mediator."""

from collections.abc import Mapping


class VirtualFS:
    """Path to content map for one policy revision.

    A new instance is built on every policy update, so the contents are
    never edited in place. Tracks which paths have already been served so
    repeated hits can stay out of the telemetry stream.
    """

    def __init__(self, files: Mapping[str, str] | None = None) -> None:
        self._files: dict[str, str] = dict(files or {})
        self._served: set[str] = set()

    def lookup(self, path: str) -> str | None:
        return self._files.get(path)

    def mark_served(self, path: str) -> bool:
        """Record a hit. Returns True the first time ``path`` is served."""
        if path in self._served:
            return False
        self._served.add(path)
        return True
