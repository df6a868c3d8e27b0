"""配置加载模块 - 从环境变量和 .env 文件加载配置，并派生核心引擎的不可变配置。"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Literal, Mapping

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TIMEFRAMES: tuple[str, ...] = ("15m", "1h", "4h", "1d")

TIMEFRAME_SECONDS: dict[str, int] = {
    "15m": 15 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
}

DEFAULT_TIMEFRAME_WEIGHTS: dict[str, float] = {
    "15m": 0.15,
    "1h": 0.25,
    "4h": 0.35,
    "1d": 0.25,
}

DEFAULT_INDICATOR_WEIGHTS: dict[str, float] = {
    "ema": 0.12,
    "rsi": 0.10,
    "macd": 0.12,
    "stoch_rsi": 0.08,
    "bollinger": 0.08,
    "adx": 0.08,
    "ichimoku": 0.12,
    "obv": 0.06,
    "vwap": 0.08,
    "fibonacci": 0.06,
    "volume_profile": 0.05,
    "atr": 0.05,
}


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


# ==================== 核心引擎配置（按值传递） ====================


@dataclass(frozen=True, slots=True)
class DirectionThresholds:
    """综合评分 → 方向 的阈值。"""

    strong_long: float = 0.5
    long: float = 0.3
    short: float = -0.3
    strong_short: float = -0.5


@dataclass(frozen=True, slots=True)
class ScoringConfig:
    """信号评分参数。"""

    indicator_weights: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_INDICATOR_WEIGHTS)
    )
    timeframe_weights: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_TIMEFRAME_WEIGHTS)
    )
    thresholds: DirectionThresholds = field(default_factory=DirectionThresholds)
    agreement_multiplier: float = 1.2
    conflict_multiplier: float = 0.7
    min_candles: int = 52
    default_timeframe_weight: float = 0.25

    def with_weights(self, weights: Mapping[str, float]) -> "ScoringConfig":
        """返回替换了指标权重的新配置。"""
        return replace(self, indicator_weights=dict(weights))


@dataclass(frozen=True, slots=True)
class RiskConfig:
    """TP/SL 规划参数。"""

    atr_multiplier_sl: float = 1.5
    rr_multiplier: float = 1.5
    tp_levels: tuple[float, ...] = (1.0, 2.0, 3.0)
    min_risk_reward: float = 1.5
    atr_period: int = 14
    fib_min_distance_pct: float = 0.5


@dataclass(frozen=True, slots=True)
class LearningConfig:
    """自适应学习超参数。"""

    learning_rate: float = 0.1
    baseline_accuracy: float = 0.5
    batch_size: int = 20
    max_history: int = 500
    min_weight: float = 0.02
    max_weight: float = 0.25
    signal_expiry_hours: float = 7 * 24
    weight_history_limit: int = 100
    recent_window: int = 50
    min_recent_resolved: int = 10


@dataclass(frozen=True, slots=True)
class FeeModel:
    """双边 taker 手续费 + 滑点模型（百分比，单边）。"""

    taker_fee_pct: float = 0.035
    slippage_pct: float = 0.01
    enabled: bool = True

    def round_trip_cost(self, size: float) -> float:
        """开平两次的总成本（美元）。"""
        if not self.enabled:
            return 0.0
        return size * (self.taker_fee_pct + self.slippage_pct) * 2 / 100.0


@dataclass(frozen=True, slots=True)
class PaperConfig:
    """纸交易账户参数。"""

    max_positions: int = 5
    risk_per_trade: float = 0.02
    min_confidence: float = 40
    leverage: float = 3
    max_margin_fraction: float = 0.3
    max_hold_hours: float = 48
    starting_balance: float = 10_000.0
    closed_trades_limit: int = 500
    equity_history_limit: int = 2000
    equity_snapshot_interval_s: float = 5 * 60


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 行情数据 ====================
    hyperliquid_api_url: str = Field(
        default="https://api.hyperliquid.xyz/info",
        description="Hyperliquid info 接口地址",
    )
    http_timeout: float = Field(default=15.0, ge=1.0, le=120.0, description="HTTP 超时（秒）")

    # ==================== 扫描参数 ====================
    scan_top_coins: int = Field(default=50, ge=1, le=200, description="按 24h 成交量扫描前 N 个币")
    fetch_batch_size: int = Field(default=5, ge=1, le=20, description="并发拉取 K 线的工作线程数")
    candle_count: int = Field(default=300, ge=60, le=5000, description="每个周期拉取的 K 线数量")
    min_record_confidence: float = Field(
        default=35,
        ge=0,
        le=99,
        description="记录到学习历史的最低置信度",
    )

    # ==================== 风控 / TP-SL ====================
    atr_multiplier_sl: float = Field(default=1.5, ge=0.5, le=5.0, description="止损 ATR 倍数")
    rr_multiplier: float = Field(default=1.5, ge=0.5, le=5.0, description="止盈 R 倍数")

    # ==================== 纸交易 ====================
    paper_max_positions: int = Field(default=5, ge=1, le=50, description="最大持仓数")
    paper_risk_per_trade: float = Field(
        default=0.02,
        gt=0.0,
        le=0.1,
        description="单笔风险（余额比例）",
    )
    paper_min_confidence: float = Field(default=40, ge=0, le=99, description="默认最低开仓置信度")
    paper_leverage: float = Field(default=3, ge=1, le=50, description="杠杆倍数")
    paper_max_hold_hours: float = Field(default=48, gt=0, description="时间止损（小时）")
    paper_starting_balance: float = Field(default=10_000.0, gt=0, description="初始资金")

    # ==================== 手续费模型 ====================
    fees_enabled: bool = Field(default=True, description="是否扣除手续费与滑点")
    taker_fee_pct: float = Field(default=0.035, ge=0.0, le=1.0, description="单边 taker 费率（%）")
    slippage_pct: float = Field(default=0.01, ge=0.0, le=1.0, description="单边滑点（%）")

    # ==================== 自适应学习 ====================
    learning_rate: float = Field(default=0.1, gt=0.0, le=1.0, description="权重学习率")
    learning_batch_size: int = Field(default=20, ge=1, le=500, description="触发权重更新的样本数")
    learning_max_history: int = Field(default=500, ge=50, description="信号历史上限")
    min_indicator_weight: float = Field(default=0.02, ge=0.0, le=0.5, description="最小指标权重")
    max_indicator_weight: float = Field(default=0.25, gt=0.0, le=1.0, description="最大指标权重")

    # ==================== 参数校准 ====================
    calibration_top_coins: int = Field(default=20, ge=1, le=100, description="校准前 N 个币")
    calibration_history_days: int = Field(default=60, ge=10, le=365, description="校准历史天数")
    calibration_timeframe: str = Field(default="4h", description="校准使用的周期")
    calibration_batch_size: int = Field(default=2, ge=1, le=10, description="每批校准的币数")
    calibration_budget_s: float = Field(default=50.0, gt=0, description="校准墙钟预算（秒）")
    calibration_min_profit_factor: float = Field(default=0.8, ge=0.0, description="最低盈亏比")
    calibration_min_trades: int = Field(default=5, ge=1, description="最少交易笔数")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    data_dir: Path = Field(
        default=Path("data"),
        description="状态文档存储目录",
    )

    @field_validator("data_dir", mode="before")
    @classmethod
    def parse_data_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def risk_config(self) -> RiskConfig:
        return RiskConfig(
            atr_multiplier_sl=self.atr_multiplier_sl,
            rr_multiplier=self.rr_multiplier,
        )

    def learning_config(self) -> LearningConfig:
        return LearningConfig(
            learning_rate=self.learning_rate,
            batch_size=self.learning_batch_size,
            max_history=self.learning_max_history,
            min_weight=self.min_indicator_weight,
            max_weight=self.max_indicator_weight,
        )

    def paper_config(self) -> PaperConfig:
        return PaperConfig(
            max_positions=self.paper_max_positions,
            risk_per_trade=self.paper_risk_per_trade,
            min_confidence=self.paper_min_confidence,
            leverage=self.paper_leverage,
            max_hold_hours=self.paper_max_hold_hours,
            starting_balance=self.paper_starting_balance,
        )

    def fee_model(self) -> FeeModel:
        return FeeModel(
            taker_fee_pct=self.taker_fee_pct,
            slippage_pct=self.slippage_pct,
            enabled=self.fees_enabled,
        )


# 全局配置实例（延迟初始化，仅供 CLI 入口使用）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
