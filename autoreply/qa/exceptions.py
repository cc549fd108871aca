"""
自动回复引擎异常定义
"""


class AutoReplyError(Exception):
    """自动回复引擎基础异常"""


class RetrievalError(AutoReplyError):
    """知识检索失败（向量索引或数据库不可用）"""


class GeneratorError(AutoReplyError):
    """答案生成器调用失败（超时、网络错误、模型返回异常）"""


class DecodeError(GeneratorError):
    """模型输出无法解析为预期的 JSON 结构"""


class PersistenceError(AutoReplyError):
    """使用次数、日志或问题写入失败"""
