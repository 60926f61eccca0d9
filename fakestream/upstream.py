import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

import requests

from .errors import UpstreamError
from .models import UpstreamResult

logger = logging.getLogger("fakestream.upstream")

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"


def _parse_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class UpstreamClient:
    """
    上游 chat completion 接口的非流式客户端。

    每个客户端请求只尝试一次, 不做重试; 上游的不稳定直接暴露给调用方。
    """

    def __init__(self, base_url: str, timeout: float = 300.0,
                 session: Optional[requests.Session] = None, max_workers: int = 256):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        # 每个阻塞中的上游请求占用一个线程, 独立线程池避免挤占事件循环的默认线程池
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="upstream")

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}{CHAT_COMPLETIONS_PATH}"

    def call(self, body: dict, credential: Optional[str] = None,
             url: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> UpstreamResult:
        """
        向上游发送一次 JSON POST。

        Args:
            body (dict): 请求体, stream 已被强制为 False。
            credential (str): Bearer 凭证, 为空时不带 Authorization 头。
            url (str): 覆盖默认的 {base_url}/v1/chat/completions。
            headers (dict): 额外转发的客户端请求头 (通用代理), Content-Type 总是 application/json。

        Returns:
            UpstreamResult: 2xx 响应。

        Raises:
            UpstreamError: 非 2xx 响应 (body 原样保留) 或网络失败 (502)。
        """
        target = url or self.endpoint
        override = {"content-type"}
        if credential:
            override.add("authorization")
        sent_headers = {k: v for k, v in (headers or {}).items() if k.lower() not in override}
        sent_headers["Content-Type"] = "application/json"
        if credential:
            sent_headers["Authorization"] = f"Bearer {credential}"

        logger.info(f"[Upstream] POST {target} (model={body.get('model')})")
        try:
            response = self.session.post(target, json=body, headers=sent_headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error(f"[Upstream] 请求超时 ({self.timeout}s): {e}")
            raise UpstreamError(502, {
                "error": {"message": f"上游请求超时 ({self.timeout}s)", "type": "upstream_error"}
            })
        except requests.exceptions.RequestException as e:
            logger.error(f"[Upstream] 连接失败: {e}")
            raise UpstreamError(502, {
                "error": {"message": f"上游服务不可用: {e}", "type": "upstream_error"}
            })

        logger.info(f"[Upstream] 收到响应 {response.status_code} ({len(response.content)} bytes)")
        result_body = _parse_body(response)
        if not response.ok:
            logger.error(f"[Upstream] 上游API错误: {response.status_code} - {response.text[:500]}")
            raise UpstreamError(response.status_code, result_body)
        return UpstreamResult(
            status_code=response.status_code,
            body=result_body,
            headers=dict(response.headers),
        )

    async def acall(self, body: dict, credential: Optional[str] = None,
                    url: Optional[str] = None,
                    headers: Optional[Dict[str, str]] = None) -> UpstreamResult:
        """在客户端自己的线程池中执行 call, 取消等待时结果被丢弃"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.executor, functools.partial(self.call, body, credential, url, headers)
        )

    def forward(self, method: str, url: str, headers: Dict[str, str],
                content: Optional[bytes] = None) -> UpstreamResult:
        """原样转发任意请求 (通用代理的透传路径), body 为原始 bytes"""
        logger.info(f"[Passthrough] {method} {url}")
        try:
            response = self.session.request(
                method, url, headers=headers, data=content,
                timeout=self.timeout, allow_redirects=False,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"[Passthrough] {method} {url} 失败: {e}")
            raise UpstreamError(502, {
                "error": {"message": f"Proxy error: {e}", "type": "upstream_error"}
            })
        return UpstreamResult(
            status_code=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )

    async def aforward(self, method: str, url: str, headers: Dict[str, str],
                       content: Optional[bytes] = None) -> UpstreamResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.executor, functools.partial(self.forward, method, url, headers, content)
        )

    def close(self):
        self.executor.shutdown(wait=False)
        self.session.close()
