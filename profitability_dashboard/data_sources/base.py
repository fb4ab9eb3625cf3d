"""定义利润分析所需的交易记录模型与数据源抽象。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..config import CostDefaultsConfig
    from ..metrics.costs import CostConfiguration


class Marketplace(str, Enum):
    """站点代码，未识别的站点统一归入 UNKNOWN。"""

    US = "US"
    UK = "UK"
    DE = "DE"
    FR = "FR"
    IT = "IT"
    ES = "ES"
    CA = "CA"
    AU = "AU"
    AE = "AE"
    SA = "SA"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "Marketplace":
        """
        功能说明:
            将报表中的站点字符串解析为枚举，兼容 GB 等别名。
        参数:
            raw (Optional[str]): 原始站点代码。
        返回:
            Marketplace: 对应枚举，无法识别时返回 UNKNOWN。
        """
        if not raw:
            return cls.UNKNOWN
        code = raw.strip().upper()
        if code == "GB":
            code = "UK"
        for member in cls:
            if member.value.upper() == code:
                return member
        return cls.UNKNOWN


class FulfillmentType(str, Enum):
    """单条交易的履约方式。"""

    FBA = "FBA"
    FBM = "FBM"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "FulfillmentType":
        if not raw:
            return cls.UNKNOWN
        value = raw.strip().upper()
        if value in {"FBA", "AFN", "AMAZON"}:
            return cls.FBA
        if value in {"FBM", "MFN", "MERCHANT", "SELLER"}:
            return cls.FBM
        return cls.UNKNOWN


class TransactionType(str, Enum):
    """交易类型，仅 ORDER 与 REFUND 参与利润汇总。"""

    ORDER = "Order"
    REFUND = "Refund"
    OTHER = "Other"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "TransactionType":
        if not raw:
            return cls.OTHER
        value = raw.strip().lower()
        if value == "order":
            return cls.ORDER
        if value == "refund":
            return cls.REFUND
        return cls.OTHER


@dataclass(frozen=True)
class Transaction:
    """
    表示结算报表中的一行交易，入库后不可修改。

    属性:
        day (date): 交易日期。
        marketplace (Marketplace): 站点。
        type (TransactionType): 订单或退款。
        sku (str): SKU 编码。
        product_name (str): 商品名称。
        parent_id (str): 父体 ID。
        category (str): 商品类目。
        fulfillment (FulfillmentType): 履约方式。
        order_id (str): 订单号。
        quantity (int): 数量，退款行可能为负数。
        product_sales (float): 站点本币销售额。
        promotional_rebates (float): 促销折扣。
        selling_fees (float): 佣金。
        fba_fees (float): FBA 配送费。
        vat (float): 平台代扣增值税。
        customs_duty (float): 报表中已记录的关税。
        ddp_fee (float): 报表中已记录的 DDP 费用。
        warehouse_cost (float): 报表中已记录的仓储费用。
        gst_cost (float): 报表中已记录的 GST。
    """

    day: date
    marketplace: Marketplace
    type: TransactionType
    sku: str
    order_id: str
    quantity: int
    product_sales: float
    fulfillment: FulfillmentType = FulfillmentType.UNKNOWN
    product_name: str = ""
    parent_id: str = ""
    category: str = ""
    promotional_rebates: float = 0.0
    selling_fees: float = 0.0
    fba_fees: float = 0.0
    vat: float = 0.0
    customs_duty: float = 0.0
    ddp_fee: float = 0.0
    warehouse_cost: float = 0.0
    gst_cost: float = 0.0


class TransactionSource(ABC):
    """
    抽象基类，描述如何获取交易记录与成本配置。

    子类需实现交易抓取与成本表装载逻辑，以便管道统一调用。
    """

    name: str

    @abstractmethod
    def fetch_transactions(self, start: date, end: date) -> List[Transaction]:
        """
        功能说明:
            获取指定时间范围内（闭区间）的交易记录。
        参数:
            start (date): 起始日期。
            end (date): 结束日期。
        返回:
            List[Transaction]: 交易记录列表。
        """

    @abstractmethod
    def fetch_cost_configuration(self, defaults: "CostDefaultsConfig") -> "CostConfiguration":
        """
        功能说明:
            装载当前运行使用的成本配置快照。
        参数:
            defaults (CostDefaultsConfig): 全局百分比默认值。
        返回:
            CostConfiguration: 只读的成本配置。
        """
