"""封装日期计算的常用辅助函数。"""

from datetime import date, timedelta
from typing import Optional

# 预设名称到回溯天数的映射，均解析为 [today - N 天, today]。
LOOKBACK_PRESETS = {
    "last7days": 7,
    "last30days": 30,
    "last90days": 90,
    "last3months": 90,
    "lastyear": 365,
}
DEFAULT_PRESET = "last30days"


def recent_period(days: int, today: Optional[date] = None) -> tuple[date, date]:
    """
    功能说明:
        根据给定天数返回最近的起止日期（包含当天）。
    参数:
        days (int): 包含的天数，至少为 1。
        today (Optional[date]): 参考日期，默认当天。
    返回:
        tuple[date, date]: (start, end) 日期元组。
    """
    end = today or date.today()
    start = end - timedelta(days=max(days, 1) - 1)
    return start, end


def previous_month(today: date) -> tuple[date, date]:
    """返回上一个完整自然月的首日与末日。"""
    last_day = today.replace(day=1) - timedelta(days=1)
    return last_day.replace(day=1), last_day


def resolve_preset(preset: Optional[str], today: Optional[date] = None) -> tuple[date, date]:
    """
    功能说明:
        将日期预设解析为具体的起止日期，未知预设回退到最近 30 天。
    参数:
        preset (Optional[str]): 预设名称，如 last7days、lastMonth。
        today (Optional[date]): 参考日期，默认当天。
    返回:
        tuple[date, date]: (start, end) 日期元组。
    """
    today = today or date.today()
    key = (preset or DEFAULT_PRESET).replace("_", "").replace("-", "").lower()
    if key == "lastmonth":
        return previous_month(today)
    days = LOOKBACK_PRESETS.get(key, LOOKBACK_PRESETS[DEFAULT_PRESET])
    return today - timedelta(days=days), today


def parse_iso_date(raw: str) -> date:
    """解析 YYYY-MM-DD 格式日期，格式错误时抛出 ValueError。"""
    return date.fromisoformat(raw.strip())
