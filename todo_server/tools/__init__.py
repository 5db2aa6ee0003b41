"""MCP 工具层：参数提取、分发、响应格式化"""
