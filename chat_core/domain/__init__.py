"""领域层模型与协议。

包含：
- models: 统一的 ChatTurn / ModelDescriptor / SnapshotEvent 模型。
- conversation: 会话、消息、角色(Persona)模型及 ConversationStore 抽象。
- exceptions: 业务异常类型定义。
"""
