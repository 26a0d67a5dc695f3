"""领域层模型与协议。

包含：
- models: 与 Provider 交互的 ChatMessage / ChatRequest / ChatStreamChunk 模型。
- messages: 会话消息 Message 及其状态、终态优先级规则。
- conversation: 服务端会话文档与快照。
- jobs: 后台任务记录。
- exceptions: 业务异常类型定义。
"""
