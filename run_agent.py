"""简单的 Agent 运行脚本示例"""

from profitability_dashboard.agent import run_agent_demo
from profitability_dashboard.config import AppConfig

if __name__ == "__main__":
    # 使用模拟交易数据，只需要 OPENAI_API_KEY
    config = AppConfig.from_env()

    print("🚀 启动 Agent，生成利润日报...")
    print("=" * 60)

    result = run_agent_demo(
        config,
        "分析最近30天各站点的利润，找出亏损商品，并对比同一商品在不同国家的利润率",
    )

    print("\n" + "=" * 60)
    print("✅ Agent 执行完成")
    print("=" * 60)

    if result.get("messages"):
        last_message = result["messages"][-1]
        print("\n📊 Agent 回复：")
        print("-" * 60)
        print(last_message.content)
        print("-" * 60)

    print("\n🔧 工具调用历史：")
    for msg in result.get("messages", []):
        if hasattr(msg, "tool_calls") and msg.tool_calls:
            for tool_call in msg.tool_calls:
                print(f"  - {tool_call.get('name', 'unknown')}")
