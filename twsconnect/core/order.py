from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from enum import Enum

from .errors import EncodingError

class OrderAction(Enum):
    BUY = "BUY"
    SELL = "SELL"
    SSHORT = "SSHORT"
    SLONG = "SLONG"
    CLOSE = "CLOSE"

    @property
    def opposite(self) -> "OrderAction":
        """Action used by exit (bracket) orders."""
        if self == OrderAction.BUY:
            return OrderAction.SELL
        return OrderAction.BUY

class OrderType(Enum):
    MARKET = "MKT"
    MARKET_ON_CLOSE = "MOC"
    LIMIT = "LMT"
    LIMIT_ON_CLOSE = "LOC"
    STOP = "STP"
    STOP_LIMIT = "STP LMT"
    MARKET_IF_TOUCHED = "MIT"
    RELATIVE = "REL"
    TRAIL = "TRAIL"
    TRAIL_LIMIT = "TRAIL LIMIT"
    PEGGED_TO_MARKET = "PEG MKT"
    VWAP = "VWAP"

    @classmethod
    def parse(cls, value: str) -> "OrderType":
        """Accept both wire names ('STP LMT') and compact spellings ('STPLMT')."""
        if isinstance(value, OrderType):
            return value
        normalized = value.strip().upper()
        for member in cls:
            if normalized in (member.value, member.value.replace(" ", ""), member.name):
                return member
        raise EncodingError(f"Unsupported order type: {value}")

    @property
    def requires_limit_price(self) -> bool:
        return self in LIMIT_PRICED_TYPES

    @property
    def requires_aux_price(self) -> bool:
        return self in (OrderType.STOP, OrderType.STOP_LIMIT, OrderType.MARKET_IF_TOUCHED)

# VWAP must carry a limit price even though the algo ignores it
LIMIT_PRICED_TYPES = {
    OrderType.LIMIT,
    OrderType.LIMIT_ON_CLOSE,
    OrderType.STOP_LIMIT,
    OrderType.TRAIL_LIMIT,
    OrderType.RELATIVE,
    OrderType.VWAP,
}

class TimeInForce(Enum):
    DAY = "DAY"
    GTC = "GTC"
    IOC = "IOC"
    GTD = "GTD"
    OPG = "OPG"
    FOK = "FOK"

class OrderState(Enum):
    CREATED = "created"
    PENDING_SUBMIT = "pending_submit"
    PRE_SUBMITTED = "pre_submitted"
    SUBMITTED = "submitted"
    PARTIALLY_FILLED = "partially_filled"
    PENDING_CANCEL = "pending_cancel"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @classmethod
    def from_status(cls, status: str, filled: Decimal = Decimal('0'),
                    remaining: Decimal = Decimal('0')) -> "OrderState":
        """
        Map a gateway status string onto the local state machine.
        The gateway has no partial-fill status; it reports Submitted with
        a non-zero filled quantity instead.
        """
        state = _STATUS_MAP.get(status.strip().lower().replace(" ", ""))
        if state is None:
            raise ValueError(f"Unknown order status: {status}")
        if state == OrderState.SUBMITTED and filled > 0 and remaining > 0:
            return OrderState.PARTIALLY_FILLED
        return state

TERMINAL_STATES = {OrderState.FILLED, OrderState.CANCELLED, OrderState.REJECTED}

# equal-or-higher rank is progress, lower rank is a stale regression
_STATE_RANK = {
    OrderState.CREATED: 0,
    OrderState.PENDING_SUBMIT: 1,
    OrderState.PRE_SUBMITTED: 2,
    OrderState.SUBMITTED: 3,
    OrderState.PARTIALLY_FILLED: 4,
    OrderState.PENDING_CANCEL: 4,
    OrderState.FILLED: 5,
    OrderState.CANCELLED: 5,
    OrderState.REJECTED: 5,
}

_STATUS_MAP = {
    'apipending': OrderState.PENDING_SUBMIT,
    'pendingsubmit': OrderState.PENDING_SUBMIT,
    'presubmitted': OrderState.PRE_SUBMITTED,
    'submitted': OrderState.SUBMITTED,
    'partiallyfilled': OrderState.PARTIALLY_FILLED,
    'pendingcancel': OrderState.PENDING_CANCEL,
    'apicancelled': OrderState.CANCELLED,
    'cancelled': OrderState.CANCELLED,
    'filled': OrderState.FILLED,
    'inactive': OrderState.REJECTED,
    'rejected': OrderState.REJECTED,
}

def to_decimal(value) -> Optional[Decimal]:
    if value is None or value == '':
        return None
    return Decimal(str(value))


@dataclass
class Contract:
    """Instrument descriptor as the gateway identifies it."""
    symbol: str = ''
    sec_type: str = 'STK'
    exchange: str = 'SMART'
    currency: str = 'USD'
    expiry: str = ''
    strike: Decimal = Decimal('0')
    right: str = ''
    multiplier: str = ''
    local_symbol: str = ''
    con_id: int = 0
    primary_exchange: str = ''
    trading_class: str = ''
    sec_id_type: str = ''
    sec_id: str = ''

    def __post_init__(self):
        self.symbol = (self.symbol or '').upper()
        self.sec_type = (self.sec_type or 'STK').upper()
        self.strike = to_decimal(self.strike) or Decimal('0')
        right = (self.right or '').upper()
        if right in ('P', 'PUT'):
            self.right = 'P'
        elif right in ('C', 'CALL'):
            self.right = 'C'
        elif right in ('', '0', '?'):
            self.right = ''
        else:
            raise EncodingError(f"Invalid option right: {self.right}")
        if bool(self.sec_id) != bool(self.sec_id_type):
            raise EncodingError("sec_id and sec_id_type must be given together")

    def validate(self) -> None:
        if not (self.symbol or self.local_symbol or self.con_id or self.sec_id):
            raise EncodingError("Contract needs a symbol, local symbol, conId or secId")
        if self.sec_type in ('OPT', 'FOP', 'WAR') and not (self.expiry and self.right and self.strike > 0):
            if not (self.con_id or self.local_symbol):
                raise EncodingError(f"{self.sec_type} contract needs expiry, strike and right")

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'sec_type': self.sec_type,
            'exchange': self.exchange,
            'currency': self.currency,
            'expiry': self.expiry,
            'strike': str(self.strike),
            'right': self.right,
            'local_symbol': self.local_symbol,
            'con_id': self.con_id,
        }


@dataclass
class Bracket:
    """
    Stop-loss / take-profit offsets around the parent's limit price.
    The lower child is priced at limit - lower_delta, the upper child at
    limit + upper_delta. Types default to (STP, LMT) for buys and
    (LMT, STP) for sells.
    """
    lower_delta: Decimal
    upper_delta: Optional[Decimal] = None
    lower_type: Optional[OrderType] = None
    upper_type: Optional[OrderType] = None

    def __post_init__(self):
        self.lower_delta = to_decimal(self.lower_delta)
        self.upper_delta = to_decimal(self.upper_delta) if self.upper_delta is not None else self.lower_delta
        if self.lower_delta is None or self.lower_delta <= 0 or self.upper_delta <= 0:
            raise EncodingError("Bracket deltas must be positive")
        if self.lower_type is not None:
            self.lower_type = OrderType.parse(self.lower_type)
        if self.upper_type is not None:
            self.upper_type = OrderType.parse(self.upper_type)

    def child_types(self, action: OrderAction):
        if action == OrderAction.BUY:
            defaults = (OrderType.STOP, OrderType.LIMIT)
        else:
            defaults = (OrderType.LIMIT, OrderType.STOP)
        return (self.lower_type or defaults[0], self.upper_type or defaults[1])


class Execution:
    """
    A single fill reported by the gateway
    """
    def __init__(
        self,
        exec_id: str,
        order_id: int,
        shares: Decimal,
        price: Decimal,
        side: str = '',
        symbol: str = '',
        perm_id: int = 0,
        cumulative_quantity: Decimal = Decimal('0'),
        average_price: Decimal = Decimal('0'),
        time: str = '',
        account: str = '',
        exchange: str = '',
        request_id: int = -1
    ):
        self.exec_id = exec_id
        self.order_id = order_id
        self.shares = Decimal(str(shares))
        self.price = Decimal(str(price))
        self.side = side
        self.symbol = symbol
        self.perm_id = perm_id
        self.cumulative_quantity = Decimal(str(cumulative_quantity))
        self.average_price = Decimal(str(average_price))
        self.time = time
        self.account = account
        self.exchange = exchange
        self.request_id = request_id
        self.commission: Optional[Decimal] = None
        self.received_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            'exec_id': self.exec_id,
            'order_id': self.order_id,
            'symbol': self.symbol,
            'side': self.side,
            'shares': str(self.shares),
            'price': str(self.price),
            'cumulative_quantity': str(self.cumulative_quantity),
            'average_price': str(self.average_price),
            'commission': str(self.commission) if self.commission is not None else None,
            'time': self.time,
            'account': self.account,
            'exchange': self.exchange
        }

    def __repr__(self) -> str:
        return f"Execution({self.exec_id}: {self.shares}@{self.price})"


class Order:
    def __init__(
            self,
            action: OrderAction,
            contract: Contract,
            quantity: Decimal,
            order_type: OrderType = OrderType.LIMIT,
            limit_price: Optional[Decimal] = None,
            aux_price: Optional[Decimal] = None,
            tif: TimeInForce = TimeInForce.GTC,
            order_id: Optional[int] = None,
            parent_id: int = 0,
            oca_group: str = '',
            oca_type: int = 2,
            transmit: bool = True,
            outside_rth: bool = False,
            account: str = '',
            order_ref: str = '',
            trailing_percent: Optional[Decimal] = None,
            trail_stop_price: Optional[Decimal] = None,
            good_after_time: str = '',
            good_till_date: str = '',
            what_if: bool = False,
            bracket: Optional[Bracket] = None
    ):
        # normalise
        if isinstance(action, str):
            action = OrderAction(action.upper())
        if isinstance(order_type, str):
            order_type = OrderType.parse(order_type)
        if isinstance(tif, str):
            tif = TimeInForce(tif.upper())

        # core attributes
        self.order_id = order_id
        self.parent_id = parent_id
        self.contract = contract
        self.action = action
        self.order_type = order_type
        self.quantity = Decimal(str(quantity))
        self.limit_price = to_decimal(limit_price)
        self.aux_price = to_decimal(aux_price)
        self.tif = tif
        self.oca_group = oca_group
        self.oca_type = oca_type
        self.transmit = transmit
        self.outside_rth = outside_rth
        self.account = account
        self.order_ref = order_ref
        self.trailing_percent = to_decimal(trailing_percent)
        self.trail_stop_price = to_decimal(trail_stop_price)
        self.good_after_time = good_after_time
        self.good_till_date = good_till_date
        self.what_if = what_if
        self.bracket = bracket

        # validation
        self.validate()

        # state tracking
        self.state = OrderState.CREATED
        self.cumulative_quantity = Decimal('0')
        self.remaining_quantity = self.quantity
        self.average_fill_price = Decimal('0')
        self.last_fill_price = Decimal('0')
        self.perm_id = 0
        self.total_commission = Decimal('0')
        self.why_held = ''
        self.reject_reason = ''

        # bracket links
        self.child_ids: List[int] = []
        self.bracket_role: Optional[str] = None  # 'stop_loss' or 'take_profit'

        # timestamps
        self.created_at = datetime.now(timezone.utc)
        self.updated_at = self.created_at

        self.executions: Dict[str, Execution] = {}

    def validate(self) -> None:
        """Raise EncodingError when a field required by the order type is missing."""
        self.contract.validate()
        if self.quantity <= 0:
            raise EncodingError("Quantity must be greater than zero")
        if self.order_type.requires_limit_price and self.limit_price is None:
            raise EncodingError(f"Limit price must be specified for {self.order_type.value} orders")
        if self.order_type.requires_aux_price and self.aux_price is None:
            raise EncodingError(f"Aux (stop) price must be specified for {self.order_type.value} orders")
        if self.order_type in (OrderType.TRAIL, OrderType.TRAIL_LIMIT) \
                and self.aux_price is None and self.trailing_percent is None:
            raise EncodingError("Trailing orders need an aux price or a trailing percent")
        if self.limit_price is not None and self.limit_price <= 0 and self.order_type != OrderType.RELATIVE:
            raise EncodingError("Limit price must be greater than zero")
        if self.oca_type not in (1, 2, 3):
            raise EncodingError("OCA type must be 1, 2 or 3")
        if self.bracket is not None and self.limit_price is None:
            raise EncodingError("Bracket orders need a parent limit price to offset from")

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_transmitted(self) -> bool:
        return self.state != OrderState.CREATED

    @property
    def symbol(self) -> str:
        return self.contract.symbol

    def apply_status(self, state: OrderState, filled: Decimal, remaining: Decimal,
                     avg_fill_price: Decimal, last_fill_price: Decimal = Decimal('0'),
                     perm_id: int = 0, why_held: str = '') -> bool:
        """
        Apply a status report. Returns True if the order changed.
        Reports that would move the order backwards, or that repeat the
        current state without new fills, are ignored.
        """
        if self.is_terminal:
            return False
        filled = Decimal(str(filled))
        if self.state == OrderState.PENDING_CANCEL and not state.is_terminal:
            # fills may still land while the cancel is in flight
            if filled <= self.cumulative_quantity:
                return False
            state = OrderState.PENDING_CANCEL
        if state.rank < self.state.rank:
            return False
        if filled < self.cumulative_quantity:
            # stale quantity snapshot; only a terminal report may still land
            if not state.is_terminal:
                return False
            filled = self.cumulative_quantity
        if state == self.state and filled == self.cumulative_quantity:
            return False

        if filled > self.cumulative_quantity:
            self.cumulative_quantity = filled
            self.average_fill_price = Decimal(str(avg_fill_price))
            if last_fill_price:
                self.last_fill_price = Decimal(str(last_fill_price))
        self.remaining_quantity = max(Decimal(str(remaining)), self.quantity - self.cumulative_quantity) \
            if not state.is_terminal else Decimal(str(remaining))
        self.state = state
        if perm_id:
            self.perm_id = perm_id
        if why_held:
            self.why_held = why_held
        self.updated_at = datetime.now(timezone.utc)
        return True

    def add_execution(self, execution: Execution) -> bool:
        """
        Record a fill. Duplicate exec ids are ignored. Quantity and the
        weighted average only move forward when the executions add up to
        more than what status reports already showed.
        """
        if execution.exec_id in self.executions:
            return False
        self.executions[execution.exec_id] = execution

        executed = sum(e.shares for e in self.executions.values())
        if executed > self.cumulative_quantity and not self.is_terminal:
            notional = sum(e.shares * e.price for e in self.executions.values())
            self.cumulative_quantity = executed
            self.average_fill_price = notional / executed
            self.last_fill_price = execution.price
            self.remaining_quantity = max(self.quantity - executed, Decimal('0'))
            if self.state.rank < OrderState.PARTIALLY_FILLED.rank and self.remaining_quantity > 0:
                self.state = OrderState.PARTIALLY_FILLED
        self.updated_at = datetime.now(timezone.utc)
        return True

    def add_commission(self, exec_id: str, commission: Decimal) -> bool:
        execution = self.executions.get(exec_id)
        if execution is None or execution.commission is not None:
            return False
        execution.commission = Decimal(str(commission))
        self.total_commission += execution.commission
        return True

    def to_dict(self) -> dict:
        """
        convert the order to a dictionary for API responses
        """
        return {
            'order_id': self.order_id,
            'parent_id': self.parent_id,
            'contract': self.contract.to_dict(),
            'action': self.action.value,
            'type': self.order_type.value,
            'quantity': str(self.quantity),
            'limit_price': str(self.limit_price) if self.limit_price is not None else None,
            'aux_price': str(self.aux_price) if self.aux_price is not None else None,
            'tif': self.tif.value,
            'oca_group': self.oca_group,
            'oca_type': self.oca_type,
            'transmit': self.transmit,
            'state': self.state.value,
            'cumulative_quantity': str(self.cumulative_quantity),
            'remaining_quantity': str(self.remaining_quantity),
            'average_fill_price': str(self.average_fill_price),
            'total_commission': str(self.total_commission),
            'child_ids': list(self.child_ids),
            'bracket_role': self.bracket_role,
            'reject_reason': self.reject_reason,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }

    def __str__(self) -> str:
        price_str = f"@{self.limit_price}" if self.limit_price is not None else self.order_type.value
        return f"{self.action.value} {self.quantity} {self.symbol} {price_str} ({self.state.value})"

    def __repr__(self) -> str:
        return f"Order({self.order_id})"
