"""领域层模型与协议。

包含：
- models: 统一的 ConversationMessage / ConversationRequest / NormalizedResponse 模型。
- exceptions: 业务异常类型定义（含 ModelBackend 错误分类）。
- redaction: 凭证脱敏工具。
"""
