from datetime import datetime, timezone

import pytest
import requests

from leadengine.datastore import CONNECTOR, Query, TableHandle, count, create, delete, first, get, select, update
from leadengine.errors import PersistenceError
from leadengine.schema import LEADS


def test_query_compiles_to_airtable_formula():
    q = Query().eq("phone", "+17195551234").isin("status", ["new", "contacted"])
    assert q.to_formula() == "AND({phone}='+17195551234',OR({status}='new',{status}='contacted'))"


def test_query_datetime_bounds_use_date_functions():
    ts = datetime(2025, 6, 1, tzinfo=timezone.utc)
    q = Query().gte("created_at", ts).lt("created_at", ts)
    assert q.to_formula() == (
        "AND(NOT(IS_BEFORE({created_at},'2025-06-01T00:00:00Z')),"
        "IS_BEFORE({created_at},'2025-06-01T00:00:00Z'))"
    )


def test_query_null_checks_and_escaping():
    assert Query().is_null("day_3_sms_sent_at").to_formula() == "{day_3_sms_sent_at}=BLANK()"
    assert Query().eq("name", "O'Brien").to_formula() == "{name}='O\\'Brien'"
    assert Query().to_formula() is None


def test_in_memory_select_filters_and_sorts():
    handle = CONNECTOR.leads()
    create(handle, {"phone": "+1", "created_at": "2025-06-01T00:00:00Z"})
    create(handle, {"phone": "+1", "created_at": "2025-06-03T00:00:00Z"})
    create(handle, {"phone": "+2", "created_at": "2025-06-02T00:00:00Z"})

    rows = select(handle, Query().eq("phone", "+1"), sort=["-created_at"])
    assert [r["fields"]["created_at"] for r in rows] == ["2025-06-03T00:00:00Z", "2025-06-01T00:00:00Z"]

    since = datetime(2025, 6, 2, tzinfo=timezone.utc)
    assert count(handle, Query().gte("created_at", since)) == 2
    assert first(handle, sort=["created_at"])["fields"]["phone"] == "+1"


def test_create_drops_empty_values_and_update_clears_none():
    handle = CONNECTOR.leads()
    rec = create(handle, LEADS.to_fields({"phone": "+1", "name": "", "email": None}))
    assert rec["fields"] == {LEADS.field_name("PHONE"): "+1"}

    update(handle, rec["id"], {"notes": "hello"})
    cleared = update(handle, rec["id"], {"notes": None})
    assert "notes" not in cleared["fields"]
    assert get(handle, rec["id"])["fields"] == cleared["fields"]


def test_update_unknown_record_raises_persistence_error():
    with pytest.raises(PersistenceError):
        update(CONNECTOR.leads(), "rec_missing", {"notes": "x"})


def test_delete_reports_whether_a_row_was_removed():
    handle = CONNECTOR.leads()
    rec = create(handle, {"phone": "+1"})
    assert delete(handle, rec["id"]) is True
    assert delete(handle, rec["id"]) is False
    assert get(handle, rec["id"]) is None


def test_numeric_range_filters_in_memory():
    handle = CONNECTOR.partners()
    for taps in (0, 5, 12):
        create(handle, {"total_taps": taps})

    assert count(handle, Query().lte("total_taps", 5)) == 2
    assert count(handle, Query().gte("total_taps", 5).lt("total_taps", 12)) == 1
    assert Query().lte("total_taps", 5).to_formula() == "{total_taps}<=5"


class _RemoteTable:
    """Stands in for a pyairtable Table whose delete answers with an HTTP status."""

    def __init__(self, status_code):
        self.status_code = status_code
        self.deleted = []

    def delete(self, record_id):
        if self.status_code:
            response = requests.Response()
            response.status_code = self.status_code
            raise requests.exceptions.HTTPError(f"{self.status_code} Client Error", response=response)
        self.deleted.append(record_id)
        return {"id": record_id, "deleted": True}


def test_remote_delete_of_unknown_record_returns_false():
    handle = TableHandle(_RemoteTable(404), False, "appBase", "Leads")
    assert delete(handle, "rec_missing") is False


def test_remote_delete_success_and_other_errors():
    ok = _RemoteTable(None)
    assert delete(TableHandle(ok, False, "appBase", "Leads"), "rec_1") is True
    assert ok.deleted == ["rec_1"]

    with pytest.raises(PersistenceError):
        delete(TableHandle(_RemoteTable(422), False, "appBase", "Leads"), "rec_1")
