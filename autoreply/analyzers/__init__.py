# Analyzers module - 答案生成模块
# 包含 AnswerGenerator 及可切换的 LLM 后端（OpenAI 兼容 / Anthropic / Gemini OAuth）
# 后端按需由 create_backend 延迟导入
