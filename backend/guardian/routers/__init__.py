"""
Guardian 路由模块包 (Guardian Router Module Package)

本包包含 Guardian API 的所有路由模块，所有端点都需要 Bearer API 令牌。

=== 流水线入口 (Pipeline Entry) ===
- issues.py: 入站事件提交（单个 / 批量）

=== 人工审批 (Human Review) ===
- reviews.py: 待审批工单列表、审批 / 拒绝

=== 合规审计 (Compliance Audit) ===
- audit_log.py: 审计日志查询、哈希链校验

=== 运维 (Operations) ===
- agent.py: Agent 状态、策略重载、审计 halted 状态解除
"""
