"""MCP 桥接模块，使用官方 Python SDK 通过 stdio 方式与利润看板服务器交互。"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import EmbeddedResource, TextContent

# 默认用于启动 MCP 服务器的可执行命令，可通过环境变量覆盖。
DEFAULT_COMMAND = os.getenv("MCP_BRIDGE_COMMAND", "python")
# JSON 数组形式的命令行参数，默认执行 `python -m profitability_dashboard.mcp_server`。
DEFAULT_ARGS = os.getenv(
    "MCP_BRIDGE_ARGS",
    json.dumps(["-m", "profitability_dashboard.mcp_server"]),
)
DEFAULT_ENV = os.getenv("MCP_BRIDGE_ENV")


def _parse_args(raw: str) -> List[str]:
    """将 JSON 数组或空格分隔的参数字符串解析为列表。"""

    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = None
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return value
    return [item for item in raw.split(" ") if item]


def _parse_env(raw: Optional[str]) -> Optional[Dict[str, str]]:
    """解析子进程需要的环境变量补丁，非法输入返回 ``None``。"""

    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(value, dict) and all(isinstance(k, str) and isinstance(v, str) for k, v in value.items()):
        return value
    return None


def _server_parameters() -> StdioServerParameters:
    return StdioServerParameters(
        command=DEFAULT_COMMAND,
        args=_parse_args(DEFAULT_ARGS),
        env=_parse_env(DEFAULT_ENV),
    )


def _normalize_blocks(blocks: List[Any]) -> Any:
    """把非结构化的返回内容整理为文本或字典列表。"""

    normalized: List[Dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, TextContent):
            normalized.append({"type": "text", "text": block.text})
        elif isinstance(block, EmbeddedResource):
            resource = block.resource
            payload: Dict[str, Any] = {"type": "embedded_resource"}
            for attr in ("uri", "text", "data"):
                value = getattr(resource, attr, None)
                if value is not None:
                    payload[attr] = value
            normalized.append(payload)
        else:
            normalized.append({"type": type(block).__name__, "repr": repr(block)})

    if not normalized:
        return None
    if len(normalized) == 1 and normalized[0]["type"] == "text":
        text = normalized[0]["text"]
        # 工具返回 JSON 文本时尽量还原为字典。
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return normalized


async def _call_tool_async(tool_name: str, arguments: Dict[str, Any]) -> Any:
    """
    功能说明:
        异步调用 MCP 工具，优先返回结构化结果。
    参数:
        tool_name (str): 工具名称，需与服务器注册项一致。
        arguments (Dict[str, Any]): 可 JSON 序列化的参数字典。
    返回:
        Any: 结构化结果、文本结果或资源内容。
    异常:
        RuntimeError: 服务器返回错误状态时抛出。
    """

    async with stdio_client(_server_parameters()) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            result = await session.call_tool(tool_name, arguments=arguments)

            if getattr(result, "isError", False):
                messages = [block.text for block in result.content if isinstance(block, TextContent)]
                raise RuntimeError(
                    f"MCP tool '{tool_name}' failed: {'; '.join(messages) if messages else 'unknown error'}"
                )
            if result.structuredContent is not None:
                return result.structuredContent
            return _normalize_blocks(list(result.content))


def call_mcp_tool(tool_name: str, args: Dict[str, Any]) -> Any:
    """
    功能说明:
        同步接口，封装异步 MCP 工具调用流程；参数中的 None 值不会发送给服务器。
    参数:
        tool_name (str): MCP 工具名称。
        args (Dict[str, Any]): 传入工具的参数字典。
    返回:
        Any: 工具返回的结构化或文本结果。
    异常:
        RuntimeError: 无法启动服务器进程或工具执行失败。
    """

    arguments = {key: value for key, value in args.items() if value is not None}
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    else:
        loop = asyncio.new_event_loop()

    try:
        if loop is None:
            return asyncio.run(_call_tool_async(tool_name, arguments))
        return loop.run_until_complete(_call_tool_async(tool_name, arguments))
    except FileNotFoundError as exc:  # pragma: no cover - 启动命令配置错误
        raise RuntimeError(f"Unable to start MCP server process: {exc}") from exc
    finally:
        if loop is not None:
            loop.close()
