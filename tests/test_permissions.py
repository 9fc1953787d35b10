"""
Tests for role and action eligibility on the confirmation panel.
"""
import pytest

from worktime.schemas.timesheets import PanelType, TimeEntry
from worktime.services.permissions import (
    allowed_actions,
    can_confirm_with_staff,
    can_send_to_management,
    has_eod_entry,
    initial_active_action,
    is_lead,
)


class TestRoles:

    def test_viewing_someone_else_makes_a_lead(self, staff, lead):
        assert is_lead(staff, lead)
        assert not is_lead(staff, staff)

    def test_ids_compare_as_text(self, staff):
        other = staff.model_copy(update={"AssingedToUserId": "42"})
        assert not is_lead(staff, other)


class TestAllowedActions:

    def test_staff_always_gets_submit_question_reject(self):
        for panel in PanelType:
            assert allowed_actions("Suggestion", panel, lead=False) == ["For Approval", "Question", "Rejected"]

    def test_lead_in_confirmed_panel(self):
        assert allowed_actions("Suggestion", PanelType.CONFIRMED, lead=True) == ["Confirmed", "Question", "Rejected"]

    def test_lead_approves_submitted_entries_in_early_panels(self):
        assert allowed_actions("For Approval", PanelType.CONFIRMED, lead=True)[0] == "Approved"

    def test_lead_in_eod_panels(self):
        assert allowed_actions("For Approval", PanelType.APPROVED, lead=True) == ["Approved", "Rejected", "Question"]
        assert allowed_actions("For Approval", PanelType.FOR_APPROVAL, lead=True) == ["Confirmed", "Rejected", "Question"]


class TestInitialActiveAction:

    @pytest.mark.parametrize(
        "status, panel, lead, expected",
        [
            ("Suggestion", PanelType.CONFIRMED, True, "Confirmed"),
            ("Suggestion", PanelType.CONFIRMED, False, "For Approval"),
            ("Draft", PanelType.DRAFT, True, "Confirmed"),
            ("Question", PanelType.CONFIRMED, True, "Question"),
            ("For Approval", PanelType.CONFIRMED, True, None),
            ("For Approval", PanelType.CONFIRMED, False, "For Approval"),
            ("Approved", PanelType.APPROVED, True, "Approved"),
            ("Confirmed", PanelType.APPROVED, True, None),
            ("Rejected", PanelType.FOR_APPROVAL, True, "Rejected"),
            ("Suggestion", PanelType.FOR_APPROVAL, True, None),
        ],
    )
    def test_initial_press_state(self, status, panel, lead, expected):
        assert initial_active_action(status, panel, lead) == expected


class TestPanelSends:

    def _entries(self, *statuses):
        return [TimeEntry(ID=i, Status=s) for i, s in enumerate(statuses, 1)]

    def test_confirm_with_staff_needs_a_confirmed_entry(self):
        assert can_confirm_with_staff(True, PanelType.CONFIRMED, self._entries("Suggestion", "Confirmed"))
        assert not can_confirm_with_staff(True, PanelType.CONFIRMED, self._entries("Suggestion"))
        assert not can_confirm_with_staff(True, PanelType.CONFIRMED, [])
        assert not can_confirm_with_staff(False, PanelType.CONFIRMED, self._entries("Confirmed"))
        assert not can_confirm_with_staff(True, PanelType.APPROVED, self._entries("Confirmed"))

    def test_eod_entry_depends_on_panel(self):
        entries = self._entries("For Approval")
        assert has_eod_entry(entries, PanelType.FOR_APPROVAL)
        assert not has_eod_entry(entries, PanelType.APPROVED)
        assert not has_eod_entry(entries, PanelType.CONFIRMED)

    def test_send_to_management(self):
        assert can_send_to_management(True, PanelType.APPROVED, self._entries("Approved"))
        assert not can_send_to_management(False, PanelType.APPROVED, self._entries("Approved"))
        assert not can_send_to_management(True, PanelType.CONFIRMED, self._entries("Approved"))
