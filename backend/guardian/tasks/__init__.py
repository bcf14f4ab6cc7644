"""
后台任务包 (Background Tasks Package)

由 main.py 的 lifespan 启动的 asyncio 循环：入站事件监听、审计缓冲回写、
限流重试、审计保留期清理、熔断状态持久化。
"""
