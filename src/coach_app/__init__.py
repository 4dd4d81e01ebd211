"""Coach App - 教練管線的 HTTP 介面。"""
