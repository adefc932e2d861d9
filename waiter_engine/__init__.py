"""
对话服务员引擎

把顾客的自由文本对话转换为可确认、可审计的订单操作。
"""

__version__ = "1.0.0"
