"""
自愈模块 (Healing Module)

分类、安全校验、限流、熔断、策略库、沙箱和编排器。
入口为 guardian.healing.agent.AgentBrain。
"""
