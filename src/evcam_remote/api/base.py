"""
EVCam 远程控制 - HTTP 客户端基类

封装 httpx.AsyncClient 的创建、请求与错误映射。
该模块屏蔽了底层 HTTP 细节，向上提供只会抛出 TransportError / ConflictError 的接口。
"""

import logging
from typing import Any

import httpx

from ..exceptions import ConflictError, TransportError

logger = logging.getLogger(__name__)

# 连接 15 秒，读取 45 秒，写入 60 秒 (文件上传)
DEFAULT_TIMEOUT = httpx.Timeout(connect=15.0, read=45.0, write=60.0, pool=15.0)
UPLOAD_TIMEOUT = httpx.Timeout(connect=15.0, read=120.0, write=120.0, pool=15.0)


class BaseApiClient:
    """平台 API 客户端基类。

    Args:
        base_url: 所有相对路径请求的前缀。
        timeout: 默认超时设置。
        transport: 可选的自定义传输层 (测试中注入 httpx.MockTransport)。
    """

    platform_name = "API"

    def __init__(
        self,
        base_url: str = "",
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self, method: str, url: str, check_status: bool = True, **kwargs: Any
    ) -> httpx.Response:
        """发送请求并映射错误。

        Args:
            check_status: 为 False 时不检查状态码，由调用方解析错误体。

        Raises:
            ConflictError: 对端返回 409。
            TransportError: 网络异常、超时或其他 4xx/5xx 状态码。
        """
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{self.platform_name} 请求超时: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.platform_name} 请求失败: {e}") from e

        if check_status:
            self._raise_for_status(resp)
        return resp

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code == 409:
            raise ConflictError(f"{self.platform_name} 409 Conflict: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise TransportError(
                f"{self.platform_name} HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

    async def request_json(
        self, method: str, url: str, check_status: bool = True, **kwargs: Any
    ) -> dict:
        """发送请求并将响应体解析为 JSON 对象。

        check_status=False 时，若错误响应体不是 JSON，仍按状态码抛出。
        """
        resp = await self.request(method, url, check_status=check_status, **kwargs)
        try:
            data = resp.json()
        except ValueError as e:
            self._raise_for_status(resp)
            raise TransportError(
                f"{self.platform_name} 响应不是合法的 JSON: {resp.text[:200]}",
                status_code=resp.status_code,
            ) from e
        if not isinstance(data, dict):
            raise TransportError(f"{self.platform_name} 响应格式异常: {data!r}")
        return data
