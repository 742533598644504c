from __future__ import annotations

from PySide6.QtCore import QObject, QRunnable, QThreadPool
from loguru import logger

from core.services.interfaces import IThumbnailProvider


def grid_token(path: str, side: int) -> str:
    return f"grid|{path}|{side}"


class _ThumbnailTask(QRunnable):
    """QRunnable for background thumbnail loading.

    Emits `receiver.thumbnailLoaded(token, path, data)` upon completion, where
    `data` is PNG bytes or None. The receiver is expected to own a Qt
    `Signal(str, str, object)` named `thumbnailLoaded`.
    """

    def __init__(
        self, *, path: str, side: int, service: IThumbnailProvider, receiver: QObject, token: str
    ) -> None:
        super().__init__()
        self._path = path
        self._side = side
        self._service = service
        self._receiver = receiver
        self._token = token

    def run(self) -> None:  # type: ignore[override]
        try:
            data = self._service.thumbnail_data(self._path, self._side)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            logger.error("Thumbnail task failed for {}: {}", self._path, ex)
            data = None
        signal = self._receiver.thumbnailLoaded  # type: ignore[attr-defined]
        try:
            signal.emit(self._token, self._path, data)
        except RuntimeError as ex:
            # Receiver was destroyed while the task ran.
            logger.debug("Dropping thumbnail for {}: {}", self._path, ex)


class ThumbnailTaskRunner:
    """Dispatches thumbnail loads to a Qt thread pool.

    Tokens have the form "grid|{path}|{side}" so receivers can match results to
    the tile that asked for them.
    """

    def __init__(
        self,
        *,
        service: IThumbnailProvider | None,
        receiver: QObject,
        pool: QThreadPool | None = None,
    ) -> None:
        self._service = service
        self._receiver = receiver
        self._pool = pool or QThreadPool.globalInstance()

    @property
    def pool(self) -> QThreadPool:
        return self._pool

    def request_grid_thumbnail(self, path: str, thumb_side: int) -> str:
        """Request a grid thumbnail for `path` with given `thumb_side`. Returns token."""
        token = grid_token(path, thumb_side)
        if self._service is None:
            return token
        task = _ThumbnailTask(
            path=path,
            side=thumb_side,
            service=self._service,
            receiver=self._receiver,
            token=token,
        )
        self._pool.start(task)
        return token
