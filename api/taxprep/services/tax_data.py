"""
Reference tax tables (tax year 2024).

Federal brackets and standard deductions, plus state tables for the states
the calculator supports. All tables are keyed by `FilingStatus`; a
qualifying surviving spouse uses the married-filing-jointly tables.

State brackets carry their published whole-dollar floors (e.g. CA 10,100),
so the accumulation in `apply_brackets` reproduces the published tables.
"""
from dataclasses import dataclass, field
from decimal import Decimal

from taxprep.models.tax_return import FilingStatus

S = FilingStatus.SINGLE
MFJ = FilingStatus.MARRIED_FILING_JOINTLY
MFS = FilingStatus.MARRIED_FILING_SEPARATELY
HOH = FilingStatus.HEAD_OF_HOUSEHOLD
QSS = FilingStatus.QUALIFYING_SURVIVING_SPOUSE


@dataclass(frozen=True)
class Bracket:
    min: Decimal
    max: Decimal | None   # None = no upper bound
    rate: Decimal


def _brackets(*rows: tuple[int, int | None, str]) -> tuple[Bracket, ...]:
    return tuple(
        Bracket(Decimal(lo), Decimal(hi) if hi is not None else None, Decimal(rate))
        for lo, hi, rate in rows
    )


def _flat(rate: str) -> dict[FilingStatus, tuple[Bracket, ...]]:
    table = _brackets((0, None, rate))
    return {S: table, MFJ: table, MFS: table, HOH: table}


def _same(table: tuple[Bracket, ...]) -> dict[FilingStatus, tuple[Bracket, ...]]:
    return {S: table, MFJ: table, MFS: table, HOH: table}


def _amounts(single: int, mfj: int, mfs: int, hoh: int) -> dict[FilingStatus, Decimal]:
    return {S: Decimal(single), MFJ: Decimal(mfj), MFS: Decimal(mfs), HOH: Decimal(hoh)}


def table_status(status: FilingStatus) -> FilingStatus:
    """Filing status used to index the tables (QSS files on the joint tables)."""
    return MFJ if status is QSS else status


# ─── Federal ───────────────────────────────────────────────────────────────────

FEDERAL_BRACKETS: dict[FilingStatus, tuple[Bracket, ...]] = {
    S: _brackets(
        (0, 11600, "0.10"), (11600, 47150, "0.12"), (47150, 100525, "0.22"),
        (100525, 191950, "0.24"), (191950, 243725, "0.32"), (243725, 609350, "0.35"),
        (609350, None, "0.37"),
    ),
    MFJ: _brackets(
        (0, 23200, "0.10"), (23200, 94300, "0.12"), (94300, 201050, "0.22"),
        (201050, 383900, "0.24"), (383900, 487450, "0.32"), (487450, 731200, "0.35"),
        (731200, None, "0.37"),
    ),
    MFS: _brackets(
        (0, 11600, "0.10"), (11600, 47150, "0.12"), (47150, 100525, "0.22"),
        (100525, 191950, "0.24"), (191950, 243725, "0.32"), (243725, 365600, "0.35"),
        (365600, None, "0.37"),
    ),
    HOH: _brackets(
        (0, 16550, "0.10"), (16550, 63100, "0.12"), (63100, 100500, "0.22"),
        (100500, 191950, "0.24"), (191950, 243700, "0.32"), (243700, 609350, "0.35"),
        (609350, None, "0.37"),
    ),
}

FEDERAL_STANDARD_DEDUCTION = _amounts(14600, 29200, 14600, 21900)

# ─── Credits ───────────────────────────────────────────────────────────────────

CHILD_TAX_CREDIT = Decimal(2000)
CTC_PHASEOUT_START = {S: Decimal(200000), MFJ: Decimal(400000), MFS: Decimal(200000), HOH: Decimal(200000)}
CTC_PHASEOUT_STEP = Decimal(1000)      # credit drops $50 per $1,000 over the threshold
CTC_PHASEOUT_AMOUNT = Decimal(50)

# Keyed by number of qualifying children, capped at 3
EITC_MAX_CREDIT = {1: Decimal(4213), 2: Decimal(6960), 3: Decimal(7830)}
EITC_PHASE_IN_RATE = {1: Decimal("0.34"), 2: Decimal("0.40"), 3: Decimal("0.45")}
EITC_PHASEOUT_RATE = {1: Decimal("0.1598"), 2: Decimal("0.2106"), 3: Decimal("0.2106")}
EITC_PHASEOUT_START = {False: Decimal(22720), True: Decimal(29640)}   # keyed by joint filing


# ─── States ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StateTaxInfo:
    code: str
    name: str
    has_income_tax: bool
    brackets: dict[FilingStatus, tuple[Bracket, ...]] = field(default_factory=dict)
    standard_deduction: dict[FilingStatus, Decimal] = field(default_factory=dict)
    personal_exemption: Decimal = Decimal(0)
    notes: str | None = None


def _no_tax(code: str, name: str, notes: str | None = None) -> StateTaxInfo:
    return StateTaxInfo(
        code=code,
        name=name,
        has_income_tax=False,
        standard_deduction=_amounts(0, 0, 0, 0),
        notes=notes or f"{name} has no state income tax",
    )


_CA_SINGLE = _brackets(
    (0, 10099, "0.01"), (10100, 23942, "0.02"), (23943, 37788, "0.04"),
    (37789, 52455, "0.06"), (52456, 66295, "0.08"), (66296, 338639, "0.093"),
    (338640, 406364, "0.103"), (406365, 677278, "0.113"), (677279, None, "0.123"),
)
_NY_SINGLE = _brackets(
    (0, 8500, "0.04"), (8501, 11700, "0.045"), (11701, 13900, "0.0525"),
    (13901, 80650, "0.055"), (80651, 215400, "0.06"), (215401, 1077550, "0.0685"),
    (1077551, 5000000, "0.0965"), (5000001, 25000000, "0.103"), (25000001, None, "0.109"),
)
_AZ_SINGLE = _brackets(
    (0, 29200, "0.0255"), (29201, 73400, "0.0288"), (73401, 146800, "0.0336"),
    (146801, 366200, "0.0424"), (366201, None, "0.045"),
)
_GA_JOINT = _brackets(
    (0, 1000, "0.01"), (1001, 3000, "0.02"), (3001, 5000, "0.03"),
    (5001, 7000, "0.04"), (7001, 10000, "0.05"), (10001, None, "0.0575"),
)

STATE_TAX_DATA: dict[str, StateTaxInfo] = {
    "CA": StateTaxInfo(
        code="CA",
        name="California",
        has_income_tax=True,
        brackets={
            S: _CA_SINGLE,
            MFJ: _brackets(
                (0, 20198, "0.01"), (20199, 47884, "0.02"), (47885, 75576, "0.04"),
                (75577, 104910, "0.06"), (104911, 132590, "0.08"), (132591, 677278, "0.093"),
                (677279, 812728, "0.103"), (812729, 1354556, "0.113"), (1354557, None, "0.123"),
            ),
            MFS: _CA_SINGLE,
            HOH: _brackets(
                (0, 20212, "0.01"), (20213, 47887, "0.02"), (47888, 61214, "0.04"),
                (61215, 75768, "0.06"), (75769, 90563, "0.08"), (90564, 460547, "0.093"),
                (460548, 552658, "0.103"), (552659, 921095, "0.113"), (921096, None, "0.123"),
            ),
        },
        standard_deduction=_amounts(5202, 10404, 5202, 10404),
    ),
    "NY": StateTaxInfo(
        code="NY",
        name="New York",
        has_income_tax=True,
        brackets={
            S: _NY_SINGLE,
            MFJ: _brackets(
                (0, 17150, "0.04"), (17151, 23600, "0.045"), (23601, 27900, "0.0525"),
                (27901, 161550, "0.055"), (161551, 323200, "0.06"), (323201, 2155350, "0.0685"),
                (2155351, 5000000, "0.0965"), (5000001, 25000000, "0.103"), (25000001, None, "0.109"),
            ),
            MFS: _NY_SINGLE,
            HOH: _brackets(
                (0, 12800, "0.04"), (12801, 17650, "0.045"), (17651, 20900, "0.0525"),
                (20901, 107650, "0.055"), (107651, 269300, "0.06"), (269301, 1616450, "0.0685"),
                (1616451, 5000000, "0.0965"), (5000001, 25000000, "0.103"), (25000001, None, "0.109"),
            ),
        },
        standard_deduction=_amounts(8000, 16050, 8000, 11200),
    ),
    "IL": StateTaxInfo(
        code="IL",
        name="Illinois",
        has_income_tax=True,
        brackets=_flat("0.0495"),
        standard_deduction=_amounts(2425, 4850, 2425, 2425),
        personal_exemption=Decimal(2775),
    ),
    "PA": StateTaxInfo(
        code="PA",
        name="Pennsylvania",
        has_income_tax=True,
        brackets=_flat("0.0307"),
        standard_deduction=_amounts(0, 0, 0, 0),
    ),
    "OH": StateTaxInfo(
        code="OH",
        name="Ohio",
        has_income_tax=True,
        brackets=_same(_brackets(
            (0, 26050, "0.0"), (26051, 46100, "0.0285"), (46101, 92150, "0.0333"),
            (92151, 115300, "0.038"), (115301, None, "0.0399"),
        )),
        standard_deduction=_amounts(0, 0, 0, 0),
    ),
    "GA": StateTaxInfo(
        code="GA",
        name="Georgia",
        has_income_tax=True,
        brackets={
            S: _brackets(
                (0, 750, "0.01"), (751, 2250, "0.02"), (2251, 3750, "0.03"),
                (3751, 5250, "0.04"), (5251, 7000, "0.05"), (7001, None, "0.0575"),
            ),
            MFJ: _GA_JOINT,
            MFS: _brackets(
                (0, 500, "0.01"), (501, 1500, "0.02"), (1501, 2500, "0.03"),
                (2501, 3500, "0.04"), (3501, 5000, "0.05"), (5001, None, "0.0575"),
            ),
            HOH: _GA_JOINT,
        },
        standard_deduction=_amounts(12000, 24000, 12000, 18000),
        personal_exemption=Decimal(2700),
    ),
    "NC": StateTaxInfo(
        code="NC",
        name="North Carolina",
        has_income_tax=True,
        brackets=_flat("0.0475"),
        standard_deduction=_amounts(12750, 25500, 12750, 19125),
    ),
    "MI": StateTaxInfo(
        code="MI",
        name="Michigan",
        has_income_tax=True,
        brackets=_flat("0.0425"),
        standard_deduction=_amounts(5100, 10200, 5100, 5100),
        personal_exemption=Decimal(5100),
    ),
    "UT": StateTaxInfo(
        code="UT",
        name="Utah",
        has_income_tax=True,
        brackets=_flat("0.0485"),
        standard_deduction=_amounts(3100, 6200, 3100, 4550),
        personal_exemption=Decimal(1941),
        notes="Utah has a flat 4.85% income tax rate with state-specific standard deductions",
    ),
    "AZ": StateTaxInfo(
        code="AZ",
        name="Arizona",
        has_income_tax=True,
        brackets={
            S: _AZ_SINGLE,
            MFJ: _brackets(
                (0, 58400, "0.0255"), (58401, 146800, "0.0288"), (146801, 293600, "0.0336"),
                (293601, 732400, "0.0424"), (732401, None, "0.045"),
            ),
            MFS: _AZ_SINGLE,
            HOH: _brackets(
                (0, 43850, "0.0255"), (43851, 110100, "0.0288"), (110101, 220200, "0.0336"),
                (220201, 549300, "0.0424"), (549301, None, "0.045"),
            ),
        },
        standard_deduction=_amounts(14600, 29200, 14600, 21900),
        personal_exemption=Decimal(2400),
        notes="Arizona has progressive tax brackets ranging from 2.55% to 4.5%",
    ),
    "TX": _no_tax("TX", "Texas"),
    "FL": _no_tax("FL", "Florida"),
    "WA": _no_tax("WA", "Washington"),
    "NV": _no_tax("NV", "Nevada"),
    "SD": _no_tax("SD", "South Dakota"),
    "TN": _no_tax("TN", "Tennessee", "Tennessee has no state income tax (as of 2021)"),
    "WY": _no_tax("WY", "Wyoming"),
}


def supported_states() -> list[str]:
    return sorted(STATE_TAX_DATA)


def states_with_income_tax() -> list[str]:
    return sorted(code for code, info in STATE_TAX_DATA.items() if info.has_income_tax)
