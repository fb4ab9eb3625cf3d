"""列出利润看板 MCP 服务器提供的工具、资源与资源模板"""

import asyncio
import sys
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client


def _print_section(title: str, rows) -> None:
    print(f"\n{title} ({len(rows)} 个):")
    print("-" * 60)
    for name, description in rows:
        print(f"  • {name}")
        if description:
            print(f"    {description}")


async def main():
    print("🔍 连接利润看板 MCP 服务器，获取可用能力...")
    print("=" * 60)

    params = StdioServerParameters(
        command=sys.executable,
        args=["-m", "profitability_dashboard.mcp_server", "stdio"],
    )

    async with stdio_client(params) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()

            tools = await session.list_tools()
            _print_section("📦 可用工具", [(tool.name, tool.description) for tool in tools.tools])

            resources = await session.list_resources()
            _print_section(
                "📚 可用资源",
                [(str(resource.uri), resource.description) for resource in resources.resources],
            )

            # history/{limit} 以资源模板形式注册
            templates = await session.list_resource_templates()
            _print_section(
                "🧩 资源模板",
                [(template.uriTemplate, template.description) for template in templates.resourceTemplates],
            )

if __name__ == "__main__":
    asyncio.run(main())
