"""对话核心逻辑。

- history: 历史记录规范化。
- cancellation: 协作式取消标记。
- orchestrator: 单个在途请求的生命周期管理。
- reconciler: 把增量文本折叠进会话状态并负责持久化。
"""
