from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app import create_app
from fieldops.domain.models import BookingStatus, EngineerStatus
from fieldops.services.geo_service import StaticCoordinateLookup

from conftest import BOOKING_DATE, SW1A, north_of


@pytest.fixture
def client(settings, repository):
    app = create_app(settings=settings, lookup=StaticCoordinateLookup({"SW1A 1AA": SW1A}))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def booking_id(repository, pat) -> int:
    return repository.create_booking(pat.service_id, pat.site_id, pat.customer_id, BOOKING_DATE, "AM", 40)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_allocate_then_conflict(client, repository, pat, make_engineer, booking_id):
    near = make_engineer("Near Engineer", pat.service_id, north_of(SW1A, 3.0))
    make_engineer("Far Engineer", pat.service_id, north_of(SW1A, 20.0))

    response = client.post(
        f"/bookings/{booking_id}/allocate",
        json={"weights": {"customer": 0.5, "engineer": 0.3, "platform": 0.2}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["selected_engineer_id"] == near
    assert body["quoted_price"] == 100.0
    assert body["explanation"]["weights"] == {"customer": 0.5, "engineer": 0.3, "platform": 0.2}
    assert [candidate["selected"] for candidate in body["explanation"]["candidates"]] == [True, False]

    again = client.post(f"/bookings/{booking_id}/allocate")
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "AlreadyAllocated"

    logs = client.get(f"/bookings/{booking_id}/allocation_logs")
    assert logs.status_code == 200
    assert [log["action"] for log in logs.json()] == ["ALLOCATED"]


def test_allocate_error_mapping(client, repository, pat, make_engineer, booking_id):
    assert client.post("/bookings/999/allocate").status_code == 404

    no_one = client.post(f"/bookings/{booking_id}/allocate")
    assert no_one.status_code == 422
    assert no_one.json()["detail"]["error"] == "NoEligibleEngineer"

    bad_weights = client.post(
        f"/bookings/{booking_id}/allocate",
        json={"weights": {"customer": 0.9, "engineer": 0.9, "platform": 0.1}},
    )
    assert bad_weights.status_code == 422


def test_reallocate_endpoint(client, repository, pat, make_engineer, booking_id):
    first = make_engineer("First", pat.service_id, north_of(SW1A, 1.0))
    second = make_engineer("Second", pat.service_id, north_of(SW1A, 4.0))
    suspended = make_engineer("Suspended", pat.service_id, SW1A, status=EngineerStatus.SUSPENDED)
    assert client.post(f"/bookings/{booking_id}/allocate").json()["selected_engineer_id"] == first

    refused = client.post(
        f"/bookings/{booking_id}/reallocate",
        json={"engineer_id": suspended, "actor_id": "admin-1"},
    )
    assert refused.status_code == 422
    assert refused.json()["detail"]["error"] == "IneligibleEngineer"

    moved = client.post(
        f"/bookings/{booking_id}/reallocate",
        json={"engineer_id": second, "actor_id": "admin-1", "reason": "rebalance"},
    )
    assert moved.status_code == 200
    assert repository.get_booking(booking_id).engineer_id == second


def test_quote_with_flex_savings(client, repository, booking_id):
    repository.create_pricing_rule("Flexible", "flex", {"discountPercent": 7}, priority=40)

    response = client.post(
        f"/bookings/{booking_id}/quote",
        json={"today": (BOOKING_DATE - timedelta(days=10)).isoformat(), "include_flex_savings": True},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["price"] == 100.0
    assert body["original_price"] == 100.0
    assert body["flexible_price"] == pytest.approx(93.0)
    assert body["potential_saving"] == pytest.approx(7.0)
    assert client.post("/bookings/999/quote").status_code == 404


def test_quote_reports_skipped_rule(client, repository, booking_id):
    repository.create_pricing_rule("Broken", "urgency", {"premiumPercent": "high"}, priority=1)
    body = client.post(f"/bookings/{booking_id}/quote").json()
    assert body["price"] == 100.0
    assert [item["error"] for item in body["skipped_rules"]] == ["RuleConfigInvalid"]


def test_transition_endpoints(client, repository, pat, make_engineer):
    engineer_id = make_engineer("Lifecycle", pat.service_id, SW1A)
    booking_id = repository.create_booking(
        pat.service_id,
        pat.site_id,
        pat.customer_id,
        BOOKING_DATE,
        "AM",
        status=BookingStatus.IN_PROGRESS,
        engineer_id=engineer_id,
    )

    missing_signature = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"action": "complete", "actor_id": "eng-1"},
    )
    assert missing_signature.status_code == 422
    assert missing_signature.json()["detail"]["error"] == "MissingSignature"

    invalid = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"action": "ACCEPT", "actor_id": "eng-1"},
    )
    assert invalid.status_code == 409
    assert invalid.json()["detail"]["message"] == "InvalidTransition(ACCEPT, IN_PROGRESS)"

    revisit = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"action": "REVISIT", "actor_id": "eng-1", "reason": "parts on order"},
    )
    assert revisit.status_code == 200
    assert revisit.json()["to_status"] == "REQUIRES_REVISIT"

    history = client.get(f"/bookings/{booking_id}/status_history").json()
    assert [(entry["from_status"], entry["to_status"]) for entry in history] == [
        ("IN_PROGRESS", "REQUIRES_REVISIT")
    ]


def test_accept_endpoint_assigns_engineer(client, repository, pat, make_engineer, booking_id):
    engineer_id = make_engineer("Accepting", pat.service_id, SW1A)

    accepted = client.post(
        f"/bookings/{booking_id}/transitions",
        json={"action": "accept", "actor_id": "dispatcher-2", "engineer_id": engineer_id},
    )
    assert accepted.status_code == 200
    assert accepted.json()["engineer_id"] == engineer_id
    assert repository.get_booking(booking_id).engineer_id == engineer_id

    route = client.get(f"/engineers/{engineer_id}/route", params={"date": BOOKING_DATE.isoformat()})
    assert [stop["booking_id"] for stop in route.json()["stops"]] == [booking_id]

    again = client.post(f"/bookings/{booking_id}/allocate")
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "AlreadyAllocated"


def test_route_endpoint(client, repository, pat, make_engineer):
    engineer_id = make_engineer("Router", pat.service_id, SW1A)
    for slot in ("PM", "AM"):
        repository.create_booking(
            pat.service_id,
            pat.site_id,
            pat.customer_id,
            BOOKING_DATE,
            slot,
            status=BookingStatus.CONFIRMED,
            engineer_id=engineer_id,
        )

    response = client.get(f"/engineers/{engineer_id}/route", params={"date": BOOKING_DATE.isoformat()})

    assert response.status_code == 200
    body = response.json()
    assert [stop["time_slot"] for stop in body["stops"]] == ["AM", "PM"]
    assert body["stops"][0]["latitude"] == pytest.approx(SW1A.latitude)
    assert body["total_distance_km"] == 0.0
    assert body["efficiency_rating"] == 100

    assert client.get("/engineers/999/route", params={"date": BOOKING_DATE.isoformat()}).status_code == 404


def test_missing_reference_data_maps_to_422(client, booking_id, monkeypatch):
    monkeypatch.setattr(client.app.state.repository, "get_site", lambda site_id: None)
    response = client.post(f"/bookings/{booking_id}/quote")
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "ReferenceDataMissing"
