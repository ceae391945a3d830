"""传输层与上游模型的抽象接口。

客户端侧：RequestOrchestrator 不直接依赖 HTTP 库，而是依赖 ChatTransport：

- 每种传输方式实现一个 ChatTransport（HTTP、进程内等）。
- open() 负责发出请求，并以上下文管理器的形式交出原始字节块序列；
  退出上下文时必须释放底层连接。

服务端侧：ChatResponder 通过 UpstreamModel 获取模型的增量文本，
只消费其增量序列与成功 / 失败信号。
"""

from typing import ContextManager, Iterable, List, Protocol

from streamline_chat.chat.cancellation import CancellationToken
from streamline_chat.domain.models import HistoryEntry


class ChatTransport(Protocol):
    """流式聊天传输协议。

    实现者需要提供：
    - name: 传输名称，用于日志。
    - open(message, history, token): 发出请求，返回产出字节块的上下文管理器。
      连接失败、非 2xx 状态等应抛出 TransportError；
      token 被取消时应尽快中断正在进行的读取。
    """

    name: str

    def open(
        self,
        message: str,
        history: List[HistoryEntry],
        token: CancellationToken,
    ) -> ContextManager[Iterable[bytes]]:
        ...


class UpstreamSession(Protocol):
    def send_stream(self, text: str) -> Iterable[str]:
        """发送一条用户消息，逐步产出模型回答的增量文本。"""

        ...


class UpstreamModel(Protocol):
    """上游模型协议，视为不透明的 token 生产者。"""

    name: str

    def create_session(self, system_prompt: str, history: List[HistoryEntry]) -> UpstreamSession:
        ...
