"""协作式取消标记。"""

import threading
from typing import Callable, List

from streamline_chat.domain.exceptions import CancellationError


class CancellationToken:
    """取消标记只是一个标志位，在每个读取边界被检查，不会抢占进行中的读取。

    cancel() 可以从其他线程（例如 UI 线程）调用；注册的回调会在 cancel 时执行，
    传输层借此立即关闭底层连接。
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """注册取消回调；若已取消则立即执行。"""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(code="CANCELLED", message="request cancelled by user", http_status=499)
