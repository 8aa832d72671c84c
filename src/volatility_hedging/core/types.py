"""
Core data types for the volatility hedging engine.

Value types use Pydantic for validation and are immutable unless they model a
lifecycle (OrderIntent), in which case mutation goes through explicit methods.
"""

import math
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from volatility_hedging.core.errors import InvalidOrderTransition


class OptionType(str, Enum):
    """Option contract type."""

    CALL = "call"
    PUT = "put"


class AssetClass(str, Enum):
    """Security type as reported by the broker."""

    STOCK = "STK"
    OPTION = "OPT"
    FUTURE = "FUT"
    FUTURE_OPTION = "FOP"

    @property
    def is_option(self) -> bool:
        return self in (AssetClass.OPTION, AssetClass.FUTURE_OPTION)


class OrderSide(str, Enum):
    """Hedge order direction."""

    BUY = "buy"
    SELL = "sell"


class OrderState(str, Enum):
    """OrderIntent lifecycle states."""

    CREATED = "created"
    SUBMITTED = "submitted"
    FILLED = "filled"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    STALE = "stale"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {OrderState.FILLED, OrderState.REJECTED, OrderState.CANCELLED, OrderState.STALE}
)

# Forward-only transition table
ALLOWED_TRANSITIONS: dict[OrderState, frozenset[OrderState]] = {
    OrderState.CREATED: frozenset(
        {OrderState.SUBMITTED, OrderState.REJECTED, OrderState.CANCELLED, OrderState.STALE}
    ),
    OrderState.SUBMITTED: TERMINAL_STATES,
    OrderState.FILLED: frozenset(),
    OrderState.REJECTED: frozenset(),
    OrderState.CANCELLED: frozenset(),
    OrderState.STALE: frozenset(),
}


class ReturnSample(BaseModel):
    """
    Single log-return observation.

    Realized variance defaults to the squared return but may carry a range
    estimator (e.g. Yang-Zhang) computed from OHLC bars.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="End of the return period")
    log_return: float = Field(..., description="Log return over the period")
    realized_variance: Optional[float] = Field(
        None, description="Realized variance for the period", ge=0, validate_default=True
    )

    @field_validator("log_return")
    @classmethod
    def validate_finite(cls, v: float) -> float:
        """Reject NaN and infinite returns."""
        if not math.isfinite(v):
            raise ValueError("Return must be a finite number")
        return v

    @field_validator("realized_variance")
    @classmethod
    def default_variance(cls, v: Optional[float], info) -> Optional[float]:
        """Fill realized variance from the squared return."""
        if v is None and "log_return" in info.data:
            return info.data["log_return"] ** 2
        if v is not None and not math.isfinite(v):
            raise ValueError("Realized variance must be finite")
        return v


class RealizedVarianceWindow(BaseModel):
    """Aggregated realized variance over a lookback of `horizon` periods."""

    model_config = ConfigDict(frozen=True)

    horizon: int = Field(..., gt=0)
    variance: float = Field(..., ge=0)
    sample_count: int = Field(..., ge=0)
    end: datetime


class HarCoefficients(BaseModel):
    """Fitted HAR-RV coefficients; disabled terms are None."""

    model_config = ConfigDict(frozen=True)

    intercept: float
    daily: Optional[float] = None
    weekly: Optional[float] = None
    monthly: Optional[float] = None
    leverage: Optional[float] = None

    def as_vector(self) -> list[float]:
        """Coefficients in design-matrix column order (enabled terms only)."""
        values = [self.intercept, self.daily, self.weekly, self.monthly, self.leverage]
        return [v for v in values if v is not None]


class FitQuality(BaseModel):
    """Regression diagnostics of the last successful fit."""

    model_config = ConfigDict(frozen=True)

    r_squared: float
    residual_variance: float = Field(..., ge=0)
    observations: int = Field(..., gt=0)
    condition_number: float = Field(..., ge=0)
    fitted_at: datetime


class ForecastResult(BaseModel):
    """
    Published volatility forecast.

    Immutable snapshot; readers hold a reference and never observe a partial
    update.
    """

    model_config = ConfigDict(frozen=True)

    underlying: str = Field(..., min_length=1)
    generated_at: datetime
    horizon: int = Field(..., gt=0, description="Horizon in periods")
    predicted_variance: float = Field(..., ge=0, description="Per-period variance")
    predicted_volatility: float = Field(..., ge=0, description="Annualized volatility")
    coefficients: HarCoefficients
    fit_quality: FitQuality

    @field_validator("underlying")
    @classmethod
    def validate_underlying(cls, v: str) -> str:
        """Ensure symbol is uppercase."""
        return v.upper()


class ContractMetadata(BaseModel):
    """Static description of a tradable contract."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    contract_id: int = Field(..., gt=0)
    underlying: str = Field(..., min_length=1)
    asset_class: AssetClass
    multiplier: Decimal = Field(default=Decimal("1"), gt=0)
    strike: Optional[Decimal] = Field(None, gt=0)
    expiration_date: Optional[datetime] = Field(
        None, description="Expiration date as listed; the cutoff time is resolved by the calendar"
    )
    option_type: Optional[OptionType] = None
    product: Optional[str] = Field(None, description="Product root, e.g. ES or ZN")

    @field_validator("underlying", "product")
    @classmethod
    def validate_symbol(cls, v: Optional[str]) -> Optional[str]:
        """Ensure symbol is uppercase."""
        return v.upper() if v is not None else v

    @model_validator(mode="after")
    def validate_option_fields(self) -> "ContractMetadata":
        """Options need a strike and a call/put flag."""
        if self.asset_class.is_option:
            if self.strike is None or self.option_type is None:
                raise ValueError("Option contracts require strike and option_type")
        return self


class Position(BaseModel):
    """
    Live position in one contract, with its expiration instant resolved.

    Linear instruments (stock, futures) carry no strike or option type.
    """

    model_config = ConfigDict(frozen=True)

    contract_id: int = Field(..., gt=0)
    underlying: str = Field(..., min_length=1)
    asset_class: AssetClass
    quantity: Decimal = Field(..., description="Signed size (+ long, - short)")
    multiplier: Decimal = Field(default=Decimal("1"), gt=0)
    strike: Optional[Decimal] = Field(None, gt=0)
    expiration: Optional[datetime] = None
    option_type: Optional[OptionType] = None

    @field_validator("underlying")
    @classmethod
    def validate_underlying(cls, v: str) -> str:
        """Ensure symbol is uppercase."""
        return v.upper()

    @model_validator(mode="after")
    def validate_option_fields(self) -> "Position":
        """Option positions need strike, expiration and type."""
        if self.asset_class.is_option:
            if self.strike is None or self.option_type is None or self.expiration is None:
                raise ValueError(
                    f"Option position {self.contract_id} requires strike, expiration and option_type"
                )
        return self

    @property
    def is_option(self) -> bool:
        return self.asset_class.is_option


class HedgeTarget(BaseModel):
    """Net delta of an underlying against its tolerance band."""

    model_config = ConfigDict(frozen=True)

    underlying: str = Field(..., min_length=1)
    net_delta: Decimal
    band: Decimal = Field(..., ge=0)
    computed_at: datetime

    @property
    def within_band(self) -> bool:
        return -self.band <= self.net_delta <= self.band


class OrderIntent(BaseModel):
    """
    Hedge order tracked through its lifecycle.

    Mutable only through `transition_to`, which enforces forward-only moves
    and keeps terminal states sticky.
    """

    model_config = ConfigDict(frozen=False, validate_assignment=True)

    id: str = Field(..., min_length=1)
    underlying: str = Field(..., min_length=1)
    instrument_id: int = Field(..., gt=0, description="Hedge instrument contract id")
    quantity: Decimal = Field(..., description="Signed hedge size (+ buy, - sell)")
    state: OrderState = OrderState.CREATED
    created_at: datetime
    updated_at: datetime
    attempts: int = Field(default=0, ge=0)
    reason: Optional[str] = None
    broker_order_id: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: Decimal) -> Decimal:
        """A hedge order always trades something."""
        if v == 0:
            raise ValueError("Hedge quantity must be non-zero")
        return v

    @property
    def side(self) -> OrderSide:
        return OrderSide.BUY if self.quantity > 0 else OrderSide.SELL

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition_to(
        self, state: OrderState, timestamp: datetime, reason: Optional[str] = None
    ) -> None:
        """
        Move the intent to a new state.

        Raises:
            InvalidOrderTransition: If the move is not forward or the intent is terminal
        """
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidOrderTransition(
                f"Order {self.id}: {self.state.value} -> {state.value} not allowed",
                current_state=self.state.value,
                attempted_transition=state.value,
            )
        self.state = state
        self.updated_at = timestamp
        if reason is not None:
            self.reason = reason
