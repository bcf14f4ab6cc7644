"""
Guardian 自愈代理 (Guardian Autonomous Incident-Healing Agent)

医疗应用的自愈代理：观察错误、安全违规和资源耗尽事件，决定是否以及如何修复，
在安全约束下执行有界的修复动作，并留下不可变、可查询的审计记录。
An autonomous healing agent for a healthcare application: it observes errors,
security violations and resource exhaustion, decides whether and how to
remediate, runs bounded remediations under safety constraints and keeps an
immutable, queryable audit trail.

## 系统架构 (System Architecture)

```
原始事件 (Raw Event: HTTP / Redis PubSub)
    ↓
签名分类 (Signature Classification)
    ↓
安全校验 (Safety Validation: denylist / critical / fan-out)
    ↓
限流 + 熔断闸门 (Rate Limit + Circuit Breaker Gate)
    ↓
沙箱测试 (Sandbox Test: copy, apply twice, verify)
    ↓
实时执行 / 人工审批 (Live Apply / Human Review)
    ↓
审计持久化 → 实时监控 → 告警通知 (Durable Audit → Realtime Monitor → Alert Notifier)
```

## 核心组件 (Core Components)

- **AgentBrain** (healing.agent): 流水线编排器
- **IssueAnalyzer** / **SignatureCatalog**: 事件分类
- **SafetyValidator**: 禁令列表和审批规则
- **RateLimiter** / **CircuitBreaker**: 修复风暴防护
- **SandboxExecutor**: 副本上的幂等性与正确性检查
- **AuditLogger** (services.audit): 持久化确认、降级缓冲、哈希链
- **RealtimeMonitor** / **AlertNotifier**: 告警与升级

## 内置修复策略 (Built-in Strategies)

1. **sanitize_unsafe_input**: 包裹不安全的 HTML 注入点
2. **parameterize_query**: 拼接 SQL 改为参数化查询
3. **redact_sensitive_log_field**: 日志中的 PHI / 凭据脱敏
4. **release_leaked_handle**: 释放泄漏的监听器、定时器、订阅、连接
5. **install_circuit_breaker_wrapper**: 为不稳定依赖加熔断包装

## 使用示例 (Usage Example)

```python
from guardian.core.deps import build_runtime
from guardian.healing.models import RawEvent

runtime = build_runtime()
await runtime.audit.initialize()
result = await runtime.agent.submit_issue_event(RawEvent(message="..."))
```
"""
