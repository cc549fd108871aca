"""
群聊知识库自动回复引擎
Group-chat Knowledge Auto-Reply Engine

监听客服群组消息，检索知识库并决定是否自动回复或建立待处理问题。
"""

__version__ = "0.3.0"
