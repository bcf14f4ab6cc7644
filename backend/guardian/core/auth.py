"""
API 令牌认证模块

外部审批界面、合规报表工具和宿主应用调用 Guardian API 时携带 Bearer Token，
这里对比其 SHA-256 哈希与配置中的 api_token_hash。
"""
import hashlib
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from guardian.core.config import settings

api_security = HTTPBearer()


async def verify_api_token(
    credentials: HTTPAuthorizationCredentials = Depends(api_security),
) -> str:
    """验证 Bearer Token，返回令牌哈希前缀作为调用方标识。"""
    expected = settings.api_token_hash
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="API token not configured")

    token_hash = hashlib.sha256(credentials.credentials.encode()).hexdigest()
    if not hmac.compare_digest(token_hash, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API token")
    return token_hash[:12]
