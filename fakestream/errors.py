from typing import Any


class ProxyError(Exception):
    """代理错误基类, 在流开始之前抛出时转换为 HTTP JSON 错误"""

    status_code = 500
    error_type = "server_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"error": {"message": self.message, "type": self.error_type}}


class InvalidRequest(ProxyError):
    """客户端请求不合法 (400), 不会访问上游"""

    status_code = 400
    error_type = "invalid_request_error"


class ServerMisconfigured(ProxyError):
    """服务端缺少凭证等配置 (500), 不会访问上游"""

    status_code = 500
    error_type = "server_error"


class UpstreamError(ProxyError):
    """
    上游返回非 2xx 或网络失败。

    body 原样转发给客户端, 让客户端看到上游原始的错误结构。
    """

    error_type = "upstream_error"

    def __init__(self, status_code: int, body: Any, message: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message or self._message_from_body(body, status_code))

    @staticmethod
    def _message_from_body(body: Any, status_code: int) -> str:
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
            if body.get("message"):
                return str(body["message"])
        if isinstance(body, str) and body:
            return body
        return f"上游 API 返回状态码 {status_code}"

    def to_payload(self) -> Any:
        return self.body


class EmulationInternalError(ProxyError):
    """上游成功之后, 提取/分块/写入过程中出错; 只会以流内错误帧的形式出现"""

    status_code = 500
    error_type = "server_error"
