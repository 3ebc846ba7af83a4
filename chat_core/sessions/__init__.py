"""会话层：上下文构建 (context_builder) 与流式生成编排 (controller)。"""
