"""HTTP 服务层"""
