"""
Interest & Schedule Arithmetic Module

Computes total interest, installment amounts and due dates for P2P loans.

Rate convention: the configured rate is an ANNUAL percentage. Simple interest
is P * r/100 * months/12, compound interest compounds monthly as
P * (1 + r/1200)^months - P. The loan term in months is the installment count
times 0.25 (weekly), 0.5 (biweekly) or 1 (monthly).

Rounding: totals are rounded half-up to cents. Installments 1..n-1 carry
the principal and interest shares P/n and I/n truncated to cents; the last
installment absorbs both remainders, so each column sums exactly and no
line is ever negative.
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .errors import ValidationError
from .money import round_down_money, round_money, to_decimal, ZERO


class InterestType(Enum):
    SIMPLE = "simple"
    COMPOUND = "compound"


class RepaymentFrequency(Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


MONTHS_PER_PERIOD = {
    RepaymentFrequency.WEEKLY: Decimal("0.25"),
    RepaymentFrequency.BIWEEKLY: Decimal("0.5"),
    RepaymentFrequency.MONTHLY: Decimal("1"),
}


@dataclass(frozen=True)
class LoanTotals:
    """Totals for a principal/rate/term combination"""
    principal: Decimal
    total_interest: Decimal
    total_amount: Decimal
    installment_amount: Decimal  # Amount of installments 1..n-1


@dataclass(frozen=True)
class ScheduleLine:
    """One computed installment, before it is persisted"""
    installment_number: int
    due_date: date
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal


def _validate_terms(principal: Decimal, annual_rate: Decimal, installments: int) -> None:
    if principal <= ZERO:
        raise ValidationError("Principal must be positive", {"principal": str(principal)})
    if annual_rate < ZERO:
        raise ValidationError("Interest rate cannot be negative", {"interest_rate": str(annual_rate)})
    if installments < 1:
        raise ValidationError("At least one installment is required", {"installments": installments})


def term_months(installments: int, frequency: RepaymentFrequency) -> Decimal:
    """Loan term expressed in months"""
    return MONTHS_PER_PERIOD[frequency] * installments


def calculate_total_interest(
    principal: Decimal,
    annual_rate: Decimal,
    installments: int,
    frequency: RepaymentFrequency,
    interest_type: InterestType = InterestType.SIMPLE
) -> Decimal:
    """
    Calculate total interest over the loan term.

    Args:
        principal: Loan principal
        annual_rate: Annual rate in percent (12 means 12%)
        installments: Number of installments
        frequency: Repayment frequency
        interest_type: Simple or monthly-compounded

    Returns:
        Total interest rounded to cents
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate)
    _validate_terms(principal, annual_rate, installments)

    months = term_months(installments, frequency)
    if interest_type == InterestType.COMPOUND:
        growth = (Decimal("1") + annual_rate / Decimal("1200")) ** months
        interest = principal * growth - principal
    else:
        interest = principal * (annual_rate / Decimal("100")) * (months / Decimal("12"))

    return round_money(interest)


def calculate_loan_totals(
    principal: Decimal,
    annual_rate: Decimal,
    installments: int,
    frequency: RepaymentFrequency,
    interest_type: InterestType = InterestType.SIMPLE
) -> LoanTotals:
    """Total interest, total amount and per-installment amount"""
    principal = round_money(principal)
    total_interest = calculate_total_interest(
        principal, annual_rate, installments, frequency, interest_type
    )
    total_amount = principal + total_interest
    return LoanTotals(
        principal=principal,
        total_interest=total_interest,
        total_amount=total_amount,
        installment_amount=(
            round_down_money(principal / installments) + round_down_money(total_interest / installments)
        ),
    )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_due_dates(
    start_date: date,
    installments: int,
    frequency: RepaymentFrequency
) -> List[date]:
    """Due date of each installment; the first falls one period after start_date"""
    if frequency == RepaymentFrequency.WEEKLY:
        return [start_date + timedelta(weeks=i) for i in range(1, installments + 1)]
    if frequency == RepaymentFrequency.BIWEEKLY:
        return [start_date + timedelta(weeks=2 * i) for i in range(1, installments + 1)]
    return [add_months(start_date, i) for i in range(1, installments + 1)]


def build_schedule(
    principal: Decimal,
    annual_rate: Decimal,
    installments: int,
    frequency: RepaymentFrequency,
    interest_type: InterestType,
    start_date: date
) -> List[ScheduleLine]:
    """
    Build the full installment schedule.

    Amount, principal and interest columns each sum exactly to the loan's
    total amount, principal and total interest.
    """
    totals = calculate_loan_totals(principal, annual_rate, installments, frequency, interest_type)
    per_principal = round_down_money(totals.principal / installments)
    per_interest = round_down_money(totals.total_interest / installments)
    due_dates = calculate_due_dates(start_date, installments, frequency)

    lines = []
    for number, due_date in enumerate(due_dates, start=1):
        if number < installments:
            principal_part = per_principal
            interest_part = per_interest
        else:
            principal_part = totals.principal - per_principal * (installments - 1)
            interest_part = totals.total_interest - per_interest * (installments - 1)
        lines.append(ScheduleLine(
            installment_number=number,
            due_date=due_date,
            amount=principal_part + interest_part,
            principal_amount=principal_part,
            interest_amount=interest_part,
        ))
    return lines


# Interest rate resolution

@dataclass
class RateContext:
    """Candidate rates known when a lender is assigned to a loan"""
    requested_rate: Optional[Decimal] = None
    tier_policy_rate: Optional[Decimal] = None
    lender_preference_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class ResolvedRate:
    rate: Decimal
    source: str  # Name of the strategy that supplied the rate


RateStrategy = Tuple[str, Callable[[RateContext], Optional[Decimal]]]

DEFAULT_RATE_STRATEGIES: List[RateStrategy] = [
    ("loan_terms", lambda ctx: ctx.requested_rate),
    ("lender_tier_policy", lambda ctx: ctx.tier_policy_rate),
    ("lender_preference", lambda ctx: ctx.lender_preference_rate),
]


class RateResolver:
    """
    Resolves a loan's interest rate from named strategies in fixed priority
    order. The platform default is always the last resort.
    """

    def __init__(self, default_rate: Decimal, strategies: Optional[List[RateStrategy]] = None):
        self.default_rate = to_decimal(default_rate)
        self.strategies = list(strategies if strategies is not None else DEFAULT_RATE_STRATEGIES)

    def resolve(self, context: RateContext) -> ResolvedRate:
        for name, strategy in self.strategies:
            rate = strategy(context)
            if rate is not None:
                return ResolvedRate(rate=to_decimal(rate), source=name)
        return ResolvedRate(rate=self.default_rate, source="platform_default")
