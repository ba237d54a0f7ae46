"""
电台收听统计服务
Radio Listener Analytics Service
"""

__version__ = '1.0.0'
