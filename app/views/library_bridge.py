"""Qt signal bridge for `LibraryVM` events."""

from __future__ import annotations

from PySide6.QtCore import QObject, Signal

from app.viewmodels.library_vm import LibraryEvent, LibraryVM


class LibraryBridge(QObject):
    """Re-emits library events as Qt signals so widgets can connect to them.

    Events are delivered on the thread that runs the library's event loop;
    connect with a queued connection when the widgets live elsewhere.
    """

    catalogChanged = Signal()
    indexingStateChanged = Signal(str)
    performanceUpdated = Signal(object)
    thumbnailLoaded = Signal(str, str, object)

    def __init__(self, library: LibraryVM, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._library = library
        self._unsubscribe = library.subscribe(self._on_event)

    @property
    def library(self) -> LibraryVM:
        return self._library

    def _on_event(self, event: LibraryEvent) -> None:
        if event is LibraryEvent.CATALOG_CHANGED:
            self.catalogChanged.emit()
        elif event is LibraryEvent.STATE_CHANGED:
            self.indexingStateChanged.emit(self._library.state.value)
        elif event is LibraryEvent.PERFORMANCE_UPDATED:
            self.performanceUpdated.emit(self._library.performance)

    def detach(self) -> None:
        """Stop forwarding events."""
        self._unsubscribe()
