"""
Tests for locating entries inside a row's entry array.
"""
from worktime.schemas.timesheets import TimeEntry
from worktime.services.entry_matcher import (
    entries_on_date,
    find_by_identity,
    find_entry,
    next_entry_id,
    same_slot,
)

from conftest import make_entry


def _entries(*dicts):
    return [TimeEntry.model_validate(d) for d in dicts]


class TestFindEntry:

    def test_natural_key_wins_over_id_match(self):
        id_only = make_entry(ID=1, Id=1, AuthorId=99, UniqueId="u-other")
        natural = make_entry(ID=7, Id=7, AuthorId=42, UniqueId="u-7")
        entries = _entries(id_only, natural)
        probe = TimeEntry(ID=1, AuthorId=42, TaskDate="10/03/2025", ParentID=5)

        index, found = find_entry(entries, probe)

        assert index == 1
        assert found.ID == 7

    def test_natural_key_compares_author_as_string_and_parent_as_number(self):
        entries = _entries(make_entry(AuthorId="42", ParentID="5", TaskDate=" 10/03/2025 "))
        probe = TimeEntry(AuthorId=42, TaskDate="10/03/2025", ParentID=5)
        assert find_entry(entries, probe)[0] == 0

    def test_id_fallback_checks_date_when_probe_has_one(self):
        entries = _entries(
            make_entry(ID=3, Id=3, AuthorId=1, TaskDate="09/03/2025", ParentID=8),
            make_entry(ID=3, Id=3, AuthorId=1, TaskDate="10/03/2025", ParentID=8),
        )
        probe = TimeEntry(ID=3, TaskDate="10/03/2025")
        assert find_entry(entries, probe)[0] == 1

    def test_id_fallback_without_date_takes_first(self):
        entries = _entries(
            make_entry(ID=3, Id=3, TaskDate="09/03/2025"),
            make_entry(ID=3, Id=3, TaskDate="10/03/2025"),
        )
        assert find_entry(entries, TimeEntry(Id=3))[0] == 0

    def test_lowercase_id_variants_are_accepted(self):
        entries = _entries({"Id": 4, "TaskDate": "10/03/2025"})
        assert find_entry(entries, TimeEntry(ID=4))[1].Id == 4

    def test_unique_id_match(self):
        entries = _entries(make_entry(ID=None, Id=None, UniqueId="abc", AuthorId=7))
        probe = TimeEntry(UniqueId="abc", TaskDate="10/03/2025")
        assert find_entry(entries, probe)[0] == 0

    def test_not_found(self):
        entries = _entries(make_entry())
        assert find_entry(entries, TimeEntry(ID=99, TaskDate="10/03/2025")) is None
        assert find_entry([], TimeEntry(ID=1)) is None


class TestIdentityHelpers:

    def test_same_slot_requires_author_and_date(self):
        original = TimeEntry.model_validate(make_entry())
        sibling = TimeEntry.model_validate(make_entry(TaskDate="11/03/2025"))
        other_author = TimeEntry.model_validate(make_entry(AuthorId=43))
        assert same_slot(original, original)
        assert not same_slot(sibling, original)
        assert not same_slot(other_author, original)

    def test_same_slot_entries_without_identity(self):
        bare = TimeEntry.model_validate(make_entry(ID=None, Id=None, UniqueId=None))
        bare_twin = TimeEntry.model_validate(make_entry(ID=None, Id=None, UniqueId=None, Description="other"))
        with_id = TimeEntry.model_validate(make_entry())
        assert same_slot(bare_twin, bare)
        assert not same_slot(with_id, bare)
        assert not same_slot(bare, with_id)

    def test_find_by_identity_accepts_string_ids_and_unique_ids(self):
        entries = _entries(make_entry(ID=1, Id=1, UniqueId="u-1"), make_entry(ID=2, Id=2, UniqueId="u-2"))
        assert find_by_identity(entries, "2")[0] == 1
        assert find_by_identity(entries, "u-1")[0] == 0
        assert find_by_identity(entries, 3) is None

    def test_next_entry_id(self):
        assert next_entry_id([]) == 1
        entries = _entries(make_entry(ID=4, Id=4), {"Id": 9}, {"Description": "no id"})
        assert next_entry_id(entries) == 10

    def test_entries_on_date(self):
        entries = _entries(make_entry(TaskDate="10/03/2025 08:00"), make_entry(TaskDate="11/03/2025"))
        assert len(entries_on_date(entries, "10/03/2025")) == 1
