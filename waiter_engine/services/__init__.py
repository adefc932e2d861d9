"""业务服务模块

子模块之间互相引用较多，这里不做统一导出，按需从子模块导入。
"""
