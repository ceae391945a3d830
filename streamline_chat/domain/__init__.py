"""领域层模型与协议。

包含：
- models: Message / StreamEvent / Outcome 等统一模型。
- conversation: 会话模型、标题推导与 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
