"""
核心模块包 (Core Module Package)

Guardian 自愈代理的基础设施组件：配置与策略、数据库连接、日志脱敏、异常体系、API 认证。

Infrastructure components of the Guardian healing agent: settings and policy,
database connections, redacting logging, exception hierarchy and API token auth.
"""
