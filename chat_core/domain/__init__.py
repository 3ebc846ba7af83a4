"""领域层模型与协议。

包含：
- models: Turn / Conversation / Persona / InferenceEvent 等数据模型。
- conversation: 内存中的 ConversationStore 以及持久化协作方协议。
- exceptions: 业务异常类型定义。
"""
