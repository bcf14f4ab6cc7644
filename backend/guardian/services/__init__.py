"""
服务层 (Services Layer)

审计记录器与存储、审批工单、审计流、实时监控、告警通知、熔断状态持久化。
"""
