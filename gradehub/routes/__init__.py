"""JSON API 蓝图"""
