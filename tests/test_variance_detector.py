"""
Open Bookkeeping Payroll - Variance Detector Tests

Advisory review findings over persisted pay slip data.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.models.payroll import PaySlip, ResidencyClass
from app.services.payslip_builder import CalculatedPaySlip
from app.services.statutory import EmployeeProfile, StatutoryCalculationEngine
from app.services.statutory.malaysia import MALAYSIA_2025, MALAYSIA_2025_FOREIGN_EPF
from app.services.variance_detector import VarianceRules, VarianceSeverity, detect_variances

RULES = VarianceRules(income_tax_threshold=400000, net_to_gross_floor=Decimal("0.50"))


def calculated_slip(base_salary=500000, dob=date(1995, 1, 15), residency=ResidencyClass.CITIZEN,
                    table=MALAYSIA_2025, as_of=date(2025, 3, 31), **kwargs) -> PaySlip:
    """Run the real engine and persist-shape the result, without a database."""
    profile = EmployeeProfile(
        employee_id=uuid4(),
        employee_code="E001",
        name="Test Employee",
        base_salary=base_salary,
        residency_class=residency,
        date_of_birth=dob,
        **kwargs,
    )
    breakdown = StatutoryCalculationEngine().calculate(profile, profile.gross_salary, table, as_of)
    return CalculatedPaySlip("PS-PR-2025-01-001", profile, breakdown).to_model(uuid4())


def manual_slip(**overrides) -> PaySlip:
    values = dict(
        base_salary=500000,
        gross_salary=500000,
        pension_employee=55000,
        pension_employer=65000,
        social_security_employee=2500,
        social_security_employer=8750,
        employment_insurance_employee=1000,
        employment_insurance_employer=1000,
        income_tax=10825,
        total_employee_deductions=69325,
        total_employer_contributions=74750,
        net_salary=430675,
        exemptions={},
    )
    values.update(overrides)
    return PaySlip(**values)


def categories(findings):
    return {f.category: f.severity for f in findings}


class TestCleanSlips:
    """Correctly calculated slips produce no findings."""

    def test_citizen_under_60(self):
        assert detect_variances(calculated_slip(), RULES) == []

    def test_citizen_over_60_exemptions_are_recognised(self):
        slip = calculated_slip(base_salary=600000, dob=date(1962, 6, 1))

        assert slip.pension_employee == 0
        assert detect_variances(slip, RULES) == []

    def test_foreign_worker_above_age_has_no_social_security_finding(self):
        """Non-citizen past the age threshold: SOCSO zero, tagged exempt, nothing flagged."""
        slip = calculated_slip(
            residency=ResidencyClass.FOREIGN,
            dob=date(1960, 1, 1),
            table=MALAYSIA_2025_FOREIGN_EPF,
            as_of=date(2025, 10, 31),
        )

        assert slip.social_security_employee == 0
        assert slip.exemptions["social_security"]["kind"] == "residency"
        assert detect_variances(slip, RULES) == []


class TestStatutoryFindings:
    """Zero deductions without a recorded exemption."""

    def test_missing_pension_is_a_warning(self):
        slip = manual_slip(pension_employee=0, total_employee_deductions=14325, net_salary=485675)

        assert categories(detect_variances(slip, RULES)) == {"pension": VarianceSeverity.WARNING}

    def test_missing_social_security_and_eis_are_info(self):
        slip = manual_slip(
            social_security_employee=0,
            employment_insurance_employee=0,
            total_employee_deductions=65825,
            net_salary=434175,
        )

        assert categories(detect_variances(slip, RULES)) == {
            "social_security": VarianceSeverity.INFO,
            "employment_insurance": VarianceSeverity.INFO,
        }

    def test_no_income_tax_above_threshold(self):
        slip = manual_slip(income_tax=0, total_employee_deductions=58500, net_salary=441500)

        findings = detect_variances(slip, RULES)

        assert categories(findings) == {"income_tax": VarianceSeverity.INFO}
        assert "verify tax reliefs" in findings[0].message

    def test_no_income_tax_below_threshold_is_fine(self):
        slip = manual_slip(
            base_salary=300000,
            gross_salary=300000,
            pension_employee=33000,
            social_security_employee=1500,
            employment_insurance_employee=600,
            income_tax=0,
            total_employee_deductions=35100,
            net_salary=264900,
        )

        assert detect_variances(slip, RULES) == []

    def test_recorded_exemption_suppresses_finding(self):
        slip = manual_slip(
            pension_employee=0,
            total_employee_deductions=14325,
            net_salary=485675,
            exemptions={"pension": {"kind": "manual", "reason": "Opted out", "employee": True, "employer": True}},
        )

        assert detect_variances(slip, RULES) == []


class TestNetToGross:
    def test_high_deductions_warning(self):
        slip = manual_slip(income_tax=200000, total_employee_deductions=258500, net_salary=241500)

        findings = detect_variances(slip, RULES)

        assert categories(findings) == {"net": VarianceSeverity.WARNING}
        assert findings[0].message == "Net pay is 48% of gross - unusually high deductions"

    def test_threshold_is_configurable(self):
        rules = VarianceRules(income_tax_threshold=400000, net_to_gross_floor=Decimal("0.90"))

        assert categories(detect_variances(manual_slip(), rules)) == {"net": VarianceSeverity.WARNING}


class TestConsistency:
    def test_inconsistent_slip_is_an_error(self):
        slip = manual_slip(net_salary=430000)

        findings = detect_variances(slip, RULES)

        assert VarianceSeverity.ERROR in [f.severity for f in findings]

    def test_findings_serialise(self):
        slip = manual_slip(pension_employee=0, total_employee_deductions=14325, net_salary=485675)

        assert detect_variances(slip, RULES)[0].to_dict()["severity"] == "warning"
