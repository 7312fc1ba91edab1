# 渐进式发布控制器
"""自动化渐进式发布：金丝雀、蓝绿、滚动更新"""

__version__ = "1.0.0"
