"""
Open Bookkeeping Payroll - Statutory Engine Tests

Unit tests for Malaysian EPF / SOCSO / EIS / PCB calculations.
All amounts are in sen.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from app.models.payroll import MaritalStatus, ResidencyClass
from app.services.statutory import (
    AgeExemption,
    ContributionSide,
    EarningsComponent,
    EmployeeOverride,
    ManualExemption,
    ResidencyExemption,
    StatutoryCalculationEngine,
    StatutoryCategory,
    TableLookup,
    TaxInputs,
    EmployeeProfile,
    YtdFigures,
)
from app.services.statutory.malaysia import (
    MALAYSIA_2025,
    MALAYSIA_2025_FOREIGN_EPF,
    MALAYSIA_TAX_RELIEFS,
    default_registry,
)
from app.services.statutory.rate_table import RateTable, RateTableRegistry
from app.utils.error_handling import PayrollCalculationException

MARCH_END = date(2025, 3, 31)
PENSION = StatutoryCategory.PENSION
SOCSO = StatutoryCategory.SOCIAL_SECURITY
EIS = StatutoryCategory.EMPLOYMENT_INSURANCE
PCB = StatutoryCategory.INCOME_TAX
EMPLOYEE = ContributionSide.EMPLOYEE
EMPLOYER = ContributionSide.EMPLOYER


def profile(base_salary=500000, dob=date(1995, 1, 15), residency=ResidencyClass.CITIZEN, employee_code="E001", **kwargs):
    return EmployeeProfile(
        employee_id=uuid4(),
        employee_code=employee_code,
        name="Test Employee",
        base_salary=base_salary,
        residency_class=residency,
        date_of_birth=dob,
        **kwargs,
    )


@pytest.fixture
def engine():
    return StatutoryCalculationEngine()


def calculate(engine, p, table=MALAYSIA_2025, as_of=MARCH_END):
    return engine.calculate(p, p.gross_salary, table, as_of)


class TestCitizenUnder60:
    """Citizen aged 30 earning RM5,000."""

    def test_epf_employee_is_11_percent(self, engine):
        """RM5,000 x 11% = RM550.00."""
        result = calculate(engine, profile())

        assert result[PENSION].employee == 55000
        assert result[PENSION].employee_source == TableLookup("MY-2025.01")

    def test_epf_employer_13_percent_up_to_5000(self, engine):
        result = calculate(engine, profile())

        assert result[PENSION].employer == 65000

    def test_epf_employer_12_percent_above_5000(self, engine):
        result = calculate(engine, profile(base_salary=500100))

        # 5,001.00 x 12% = 600.12
        assert result[PENSION].employer == 60012

    def test_socso_and_eis(self, engine):
        result = calculate(engine, profile())

        assert result[SOCSO].employee == 2500
        assert result[SOCSO].employer == 8750
        assert result[EIS].employee == 1000
        assert result[EIS].employer == 1000

    def test_pcb_after_reliefs(self, engine):
        """
        Annual 60,000 less reliefs 9,000 + 4,000 (EPF cap) + 350 (SOCSO/EIS cap)
        = 46,650 taxable -> 1,299.00 a year -> 108.25 a month.
        """
        result = calculate(engine, profile())

        assert result[PCB].employee == 10825
        assert result[PCB].employer == 0
        assert result[PCB].employer_source is None

    def test_totals_and_net(self, engine):
        result = calculate(engine, profile())

        assert result.total_employee == 55000 + 2500 + 1000 + 10825
        assert result.total_employer == 65000 + 8750 + 1000
        assert result.net_salary == 430675
        assert result.gross_salary == 500000

    def test_no_exemptions_recorded(self, engine):
        result = calculate(engine, profile())

        assert result.exemptions_json() == {}
        assert result.rate_sources_json()[PENSION.value] == {"employee": "table", "employer": "table"}


class TestWageCeilings:
    """Contributions stop growing above the statutory wage ceilings."""

    def test_socso_and_eis_capped_at_6000(self, engine):
        result = calculate(engine, profile(base_salary=1000000))

        assert result[SOCSO].employee == 3000  # 0.5% of 6,000
        assert result[EIS].employee == 1200    # 0.2% of 6,000

    def test_epf_capped_at_20000(self, engine):
        result = calculate(engine, profile(base_salary=3000000))

        assert result[PENSION].employee == 220000  # 11% of 20,000
        assert result[PENSION].employer == 240000  # 12% of 20,000


class TestRounding:
    """Each side is rounded once, half-up, to whole sen."""

    def test_half_sen_rounds_up(self, engine):
        # 0.2% of 1,234.25 = 2.4685 -> 2.47
        result = calculate(engine, profile(base_salary=123425))

        assert result[EIS].employee == 247

    def test_allowances_are_part_of_gross(self, engine):
        p = profile(base_salary=450000, earnings=(EarningsComponent("HOUSING", "Housing allowance", amount=50000),))
        result = calculate(engine, p)

        assert result.gross_salary == 500000
        assert result[PENSION].employee == 55000


class TestEarningsComponents:
    """Each component counts only towards the categories it is subject to."""

    def test_allowance_outside_epf(self, engine):
        housing = EarningsComponent(
            "HOUSING", "Housing allowance", amount=50000,
            subject_to=frozenset({SOCSO, EIS, PCB}),
        )
        result = calculate(engine, profile(base_salary=450000, earnings=(housing,)))

        assert result.gross_salary == 500000
        assert result[PENSION].employee == 49500   # 11% of 4,500
        assert result[PENSION].employer == 58500   # 13% of 4,500
        assert result[SOCSO].employee == 2500
        assert result[EIS].employee == 1000
        assert result.wages[PENSION] == 450000
        assert result.taxable_wage == 500000

    def test_percentage_of_base(self, engine):
        p = profile(
            base_salary=450000,
            earnings=(EarningsComponent("COLA", "Cost of living", percentage=Decimal("10")),),
        )

        assert p.gross_salary == 495000
        assert p.earnings_json()[0]["amount"] == 45000
        assert calculate(engine, p)[PENSION].employee == 54450

    def test_allowance_outside_income_tax(self, engine):
        meal = EarningsComponent(
            "MEAL", "Meal allowance", amount=100000,
            subject_to=frozenset({PENSION, SOCSO, EIS}),
        )
        result = calculate(engine, profile(earnings=(meal,)))

        assert result.gross_salary == 600000
        assert result.taxable_wage == 500000
        assert result[PCB].employee == 10825


class TestYearToDateProjection:
    """PCB spreads the year's remaining tax over the periods still open."""

    def test_raise_after_two_months(self, engine):
        """
        Projected 10,000 + 8,000 x 10 = 90,000; reliefs 13,350 -> 76,650 taxable
        -> 4,963.50 a year, less 216.50 withheld, over 10 months = 474.70.
        """
        ytd = YtdFigures(
            gross_salary=1000000,
            taxable_wage=1000000,
            pension_employee=110000,
            social_security_employee=7000,
            income_tax=21650,
            months=2,
        )
        p = profile(base_salary=800000)
        result = engine.calculate(p, p.gross_salary, MALAYSIA_2025, MARCH_END, ytd)

        assert result[PCB].employee == 47470

    def test_same_salary_all_year_matches_annualised(self, engine):
        ytd = YtdFigures(1000000, 1000000, 110000, 7000, 21650, 2)
        p = profile()
        result = engine.calculate(p, p.gross_salary, MALAYSIA_2025, MARCH_END, ytd)

        assert result[PCB].employee == 10825

    def test_hired_during_the_year(self, engine):
        """Hired in March: 10 open months, 50,000 projected, 36,650 taxable -> 699.00 / 10."""
        p = profile(hire_date=date(2025, 3, 1))

        assert StatutoryCalculationEngine.open_months(p, MARCH_END, YtdFigures()) == 10
        assert calculate(engine, p)[PCB].employee == 6990

    def test_hired_in_an_earlier_year(self, engine):
        p = profile(hire_date=date(2020, 1, 1))

        assert StatutoryCalculationEngine.open_months(p, MARCH_END, YtdFigures()) == 12
        assert calculate(engine, p)[PCB].employee == 10825

    def test_tax_already_withheld_is_not_refunded(self, engine):
        ytd = YtdFigures(1000000, 1000000, 110000, 7000, 500000, 2)
        p = profile()
        result = engine.calculate(p, p.gross_salary, MALAYSIA_2025, MARCH_END, ytd)

        assert result[PCB].employee == 0

    def test_foreign_flat_rate_ignores_ytd(self, engine):
        ytd = YtdFigures(600000, 600000, 0, 0, 168000, 2)
        p = profile(base_salary=300000, residency=ResidencyClass.FOREIGN)
        result = engine.calculate(p, p.gross_salary, MALAYSIA_2025, MARCH_END, ytd)

        assert result[PCB].employee == 84000


class TestAgeRules:
    """Employees aged 60 and above."""

    def test_citizen_over_60(self, engine):
        result = calculate(engine, profile(base_salary=600000, dob=date(1962, 6, 1)))

        assert result[PENSION].employee == 0
        assert result[PENSION].employer == 24000   # 4%
        assert result[SOCSO].employee == 0
        assert result[SOCSO].employer == 7500      # 1.25% of 6,000
        assert result[EIS].employee == 0
        assert result[EIS].employer == 0
        assert result[PCB].employee == 24417

    def test_age_exemption_is_tagged_per_side(self, engine):
        result = calculate(engine, profile(base_salary=600000, dob=date(1962, 6, 1)))

        assert isinstance(result[PENSION].exemption, AgeExemption)
        assert result[PENSION].is_exempt(EMPLOYEE)
        assert not result[PENSION].is_exempt(EMPLOYER)
        assert result.exemptions_json()[EIS.value] == {
            "kind": "age",
            "reason": "EIS does not apply from age 60",
            "employee": True,
            "employer": True,
        }

    def test_age_is_taken_at_period_end(self, engine):
        """Turning 60 on the last day of the period already counts."""
        p = profile(dob=date(1965, 3, 31))
        result = calculate(engine, p)

        assert result[PENSION].employee == 0

    def test_missing_date_of_birth_fails_for_citizen(self, engine):
        with pytest.raises(PayrollCalculationException) as exc_info:
            calculate(engine, profile(dob=None, employee_code="E404"))

        assert "Date of birth required" in exc_info.value.message
        assert exc_info.value.employee_code == "E404"


class TestForeignWorkers:
    """Non-citizens: residency exemptions and flat PCB."""

    def test_social_security_forced_to_zero_and_tagged(self, engine):
        result = calculate(engine, profile(residency=ResidencyClass.FOREIGN, dob=date(1960, 1, 1)))

        assert result[SOCSO].employee == 0
        assert result[SOCSO].employer == 0
        assert isinstance(result[SOCSO].exemption, ResidencyExemption)
        assert result.exemptions_json()[SOCSO.value]["employee"] is True

    def test_no_epf_before_october_2025(self, engine):
        result = calculate(engine, profile(residency=ResidencyClass.FOREIGN))

        assert result[PENSION].employee == 0
        assert isinstance(result[PENSION].exemption, ResidencyExemption)

    def test_epf_two_percent_from_october_2025(self, engine):
        p = profile(residency=ResidencyClass.FOREIGN)
        result = calculate(engine, p, MALAYSIA_2025_FOREIGN_EPF, date(2025, 10, 31))

        assert result[PENSION].employee == 10000
        assert result[PENSION].employer == 10000
        assert result[PENSION].exemption is None

    def test_flat_28_percent_pcb(self, engine):
        result = calculate(engine, profile(base_salary=300000, residency=ResidencyClass.FOREIGN))

        assert result[PCB].employee == 84000
        assert result.net_salary == 216000

    def test_date_of_birth_not_needed(self, engine):
        result = calculate(engine, profile(residency=ResidencyClass.FOREIGN, dob=None))

        assert result[PCB].employee == 140000


class TestOverridesAndManualExemptions:
    """Per-employee rate overrides and documented exemptions."""

    def test_epf_employee_override(self, engine):
        p = profile(rate_overrides={(PENSION, EMPLOYEE): Decimal("9")})
        result = calculate(engine, p)

        assert result[PENSION].employee == 45000
        assert result[PENSION].employee_source == EmployeeOverride(Decimal("9"))
        assert result[PENSION].employer_source == TableLookup("MY-2025.01")
        assert result.rate_sources_json()[PENSION.value]["employee"] == "override"

    def test_override_respects_wage_ceiling(self, engine):
        p = profile(base_salary=3000000, rate_overrides={(PENSION, EMPLOYER): Decimal("15")})
        result = calculate(engine, p)

        assert result[PENSION].employer == 300000  # 15% of 20,000

    def test_manual_exemption_zeroes_both_sides(self, engine):
        p = profile(manual_exemptions={SOCSO: "Covered by employer's private scheme"})
        result = calculate(engine, p)

        assert result[SOCSO].employee == 0
        assert result[SOCSO].employer == 0
        assert result[SOCSO].exemption == ManualExemption("Covered by employer's private scheme")

    def test_manual_exemption_wins_over_rates(self, engine):
        p = profile(
            rate_overrides={(PENSION, EMPLOYEE): Decimal("9")},
            manual_exemptions={PENSION: "Opted out"},
        )
        result = calculate(engine, p)

        assert result[PENSION].employee == 0
        assert result[PENSION].employee_source is None


class TestTaxReliefs:
    """PCB relief composition."""

    def test_married_with_non_working_spouse_and_children(self):
        p = profile(
            marital_status=MaritalStatus.MARRIED,
            spouse_working=False,
            number_of_children=3,
            children_in_university=1,
        )
        total = StatutoryCalculationEngine.total_reliefs(
            p, MALAYSIA_TAX_RELIEFS, TaxInputs(pension=55000, social_security=3500),
        )

        # 9,000 + 4,000 spouse + 2 x 2,000 + 8,000 + 4,000 EPF cap + 350 SOCSO/EIS cap
        assert total == 2935000

    def test_low_income_pays_no_pcb(self, engine):
        result = calculate(engine, profile(base_salary=100000))

        assert result[PCB].employee == 0


class TestEngineErrors:
    def test_negative_gross_rejected(self, engine):
        p = profile()
        with pytest.raises(PayrollCalculationException):
            engine.calculate(p, -1, MALAYSIA_2025, MARCH_END)


class TestRateTableRegistry:
    """Versioned rate table lookup."""

    def test_latest_table_in_effect(self):
        registry = default_registry()

        assert registry.get_rate_table(date(2025, 3, 31)).version == "MY-2025.01"
        assert registry.get_rate_table(date(2025, 10, 1)).version == "MY-2025.10"
        assert registry.get_rate_table(date(2026, 6, 30)).version == "MY-2025.10"

    def test_no_table_before_first_effective_date(self):
        with pytest.raises(LookupError):
            default_registry().get_rate_table(date(2024, 12, 31))

    def test_versions_cannot_be_replaced(self):
        registry = RateTableRegistry([MALAYSIA_2025])
        replacement = RateTable(version="MY-2025.01", effective_from=date(2025, 1, 1), currency="MYR", entries=())

        with pytest.raises(ValueError):
            registry.register(replacement)

    def test_versions_sorted_by_effective_date(self):
        assert default_registry().versions == ["MY-2025.01", "MY-2025.10"]
