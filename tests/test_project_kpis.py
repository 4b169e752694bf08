"""
Tests: Project KPI listing and value recording.
"""

import pytest

from conftest import OWNER_ID, PM_ID
from template_center.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from template_center.models.audit import AuditEvent
from template_center.models.governance import KpiValue
from template_center.services import project_kpi_service
from template_center.services.template_apply_service import apply_template


@pytest.fixture()
def applied(project, org, template):
    apply_template(
        project_id=project.id, template_key="waterfall_standard", version=1,
        actor_id=OWNER_ID, organization_id=org.id,
    )
    return project


class TestListProjectKpis:
    def test_lists_attachments_without_values(self, applied, org):
        kpis = project_kpi_service.list_project_kpis(applied.id, org.id)
        assert [k["kpi_key"] for k in kpis] == ["budget_burn", "schedule_variance"]
        assert all(k["latest_value"] is None for k in kpis)
        sv = next(k for k in kpis if k["kpi_key"] == "schedule_variance")
        assert sv["is_required"] is True
        assert sv["unit"] == "days"

    def test_empty_before_apply(self, project, org):
        assert project_kpi_service.list_project_kpis(project.id, org.id) == []

    def test_cross_org_forbidden(self, applied, other_org):
        with pytest.raises(ForbiddenError):
            project_kpi_service.list_project_kpis(applied.id, other_org.id)


class TestRecordValue:
    def test_records_and_becomes_latest(self, applied, org):
        project_kpi_service.record_value(applied.id, "schedule_variance", PM_ID, org.id, value=3)
        row = project_kpi_service.record_value(
            applied.id, "schedule_variance", PM_ID, org.id, value="-1.5", note="recovered",
        )
        assert row["value"] == -1.5
        assert row["metadata"] == {"note": "recovered"}

        kpis = project_kpi_service.list_project_kpis(applied.id, org.id)
        sv = next(k for k in kpis if k["kpi_key"] == "schedule_variance")
        assert sv["latest_value"]["value"] == -1.5
        assert KpiValue.query.count() == 2

    def test_text_only_value(self, applied, org):
        row = project_kpi_service.record_value(
            applied.id, "budget_burn", PM_ID, org.id, value_text="on track",
        )
        assert row["value"] is None
        assert row["value_text"] == "on track"

    def test_emits_kpi_value_recorded(self, applied, org):
        project_kpi_service.record_value(applied.id, "budget_burn", PM_ID, org.id, value=0.42)
        event = AuditEvent.query.filter_by(event_type="KPI_VALUE_RECORDED").one()
        assert event.new_state["kpi_key"] == "budget_burn"
        assert event.actor_id == PM_ID

    def test_unattached_kpi_not_found(self, applied, org):
        with pytest.raises(NotFoundError) as exc_info:
            project_kpi_service.record_value(applied.id, "defect_density", PM_ID, org.id, value=1)
        assert exc_info.value.code == "kpi_not_attached"

    def test_value_required(self, applied, org):
        with pytest.raises(BadRequestError):
            project_kpi_service.record_value(applied.id, "budget_burn", PM_ID, org.id)

        event = AuditEvent.query.filter_by(event_type="KPI_VALUE_RECORD_FAILED").one()
        assert event.new_state["error_code"] == "VALIDATION_REQUIRED"
        assert event.new_state["kpi_key"] == "budget_burn"

    def test_non_numeric_value_rejected_and_audited(self, applied, org):
        before = AuditEvent.query.count()
        with pytest.raises(BadRequestError) as exc_info:
            project_kpi_service.record_value(applied.id, "budget_burn", PM_ID, org.id, value="abc")
        assert exc_info.value.code == "VALIDATION_INVALID"
        assert KpiValue.query.count() == 0

        assert AuditEvent.query.count() == before + 1
        event = AuditEvent.query.filter_by(event_type="KPI_VALUE_RECORD_FAILED").one()
        assert event.actor_id == PM_ID
        assert event.project_id == applied.id
        assert event.new_state["error_code"] == "VALIDATION_INVALID"

    @pytest.mark.parametrize("value", ["NaN", "Infinity"])
    def test_non_finite_value_rejected(self, applied, org, value):
        with pytest.raises(BadRequestError):
            project_kpi_service.record_value(applied.id, "budget_burn", PM_ID, org.id, value=value)
        assert KpiValue.query.count() == 0

    def test_unattached_kpi_is_not_audited(self, applied, org):
        with pytest.raises(NotFoundError):
            project_kpi_service.record_value(applied.id, "defect_density", PM_ID, org.id, value=1)
        assert AuditEvent.query.filter_by(event_type="KPI_VALUE_RECORD_FAILED").count() == 0
