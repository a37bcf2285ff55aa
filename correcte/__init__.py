"""作业提交异步处理流水线"""

__version__ = "0.1.0"
