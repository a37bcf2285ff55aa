"""Worker 进程"""
