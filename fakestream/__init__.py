"""假流式代理: 上游只返回完整 JSON 时, 向客户端模拟 SSE 流式输出。"""

__version__ = "1.0.0"
