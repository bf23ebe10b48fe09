"""
Integration tests for the full trip lifecycle.
Uses pytest-asyncio + httpx AsyncClient against the ASGI app, with an
in-memory database, an in-memory Redis and a stubbed Horizon.
"""
import pytest
from stellar_sdk import Keypair

TX_HASH = "b" * 64

TRIP_REQUEST = {
    "origin": {"address": "Plaza de Armas, Santiago", "lat": -33.4378, "lng": -70.6504, "country": "CL"},
    "destination": {"address": "Costanera Center, Providencia", "lat": -33.4173, "lng": -70.6063},
    "preferred_vehicle_type": "SEDAN",
}


async def _create_trip(client, headers, **overrides):
    resp = await client.post("/v1/trips", headers=headers, json={**TRIP_REQUEST, **overrides})
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _accept_and_start(client, driver, trip_id):
    user, headers = driver
    resp = await client.post(f"/v1/drivers/{user['id']}/accept", headers=headers, json={"trip_id": trip_id})
    assert resp.status_code == 200, resp.text
    resp = await client.post(f"/v1/trips/{trip_id}/start", headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


async def _connect_wallet(client, headers):
    address = Keypair.random().public_key
    resp = await client.put("/v1/wallet/address", headers=headers, json={"stellar_address": address})
    assert resp.status_code == 200, resp.text
    return address


async def _complete_with_stellar(client, passenger, driver):
    _, p_headers = passenger
    _, d_headers = driver
    address = await _connect_wallet(client, d_headers)
    trip = await _create_trip(client, p_headers)
    await _accept_and_start(client, driver, trip["id"])
    resp = await client.post(
        f"/v1/trips/{trip['id']}/complete", headers=d_headers, json={"payment_method": "STELLAR"}
    )
    assert resp.status_code == 200, resp.text
    return trip, address, resp.json()


def _pay_on_horizon(horizon, tx_hash, address, body, memo=None):
    horizon.transactions[tx_hash] = {
        "hash": tx_hash,
        "successful": True,
        "memo_type": "text",
        "memo": body["trip"]["trip_number"] if memo is None else memo,
    }
    horizon.operations[tx_hash] = [
        {"type": "payment", "to": address, "amount": body["stellar"]["xlm_amount"], "asset_type": "native"}
    ]


@pytest.mark.asyncio
class TestTripAPI:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_create_trip_missing_auth(self, client):
        resp = await client.post("/v1/trips", json=TRIP_REQUEST)
        assert resp.status_code == 401

    async def test_create_trip_invalid_lat(self, client, passenger):
        _, headers = passenger
        bad = {**TRIP_REQUEST, "origin": {**TRIP_REQUEST["origin"], "lat": 999}}
        resp = await client.post("/v1/trips", headers=headers, json=bad)
        assert resp.status_code == 422

    async def test_round_trip_requires_return_time(self, client, passenger):
        _, headers = passenger
        resp = await client.post("/v1/trips", headers=headers, json={**TRIP_REQUEST, "is_round_trip": True})
        assert resp.status_code == 422

    async def test_create_trip_prices_server_side(self, client, passenger, matching_mock):
        _, headers = passenger
        trip = await _create_trip(
            client, headers,
            passengers=12,
            is_round_trip=True,
            return_scheduled_at="2026-11-01T18:00:00Z",
        )

        assert trip["status"] == "PENDING"
        assert trip["passengers"] == 7
        assert trip["currency"] == "CLP"
        assert trip["trip_number"].startswith("TRP-")
        assert trip["distance_km"] > 0

        resp = await client.post("/v1/pricing/calculate", headers=headers, json={
            "distance_km": trip["distance_km"],
            "duration_minutes": trip["duration_minutes"],
            "country": "CL",
            "vehicle_type": "SEDAN",
        })
        one_way = resp.json()
        assert trip["total_price"] == pytest.approx(one_way["total_price"] * 2)
        assert trip["base_price"] == pytest.approx(3000.0)

        matching_mock.assert_called_once()
        assert matching_mock.call_args.kwargs["trip_id"] == trip["id"]
        assert matching_mock.call_args.kwargs["vehicle_type"] == "SEDAN"

    async def test_client_distance_is_floored_at_straight_line(self, client, passenger):
        _, headers = passenger
        routed = await _create_trip(client, headers)
        zeroed = await _create_trip(client, headers, distance_km=0, duration_minutes=0)

        assert zeroed["distance_km"] == pytest.approx(routed["distance_km"], abs=1e-3)
        assert zeroed["total_price"] > zeroed["base_price"]
        assert zeroed["total_price"] == pytest.approx(routed["total_price"], rel=0.05)

    async def test_longer_client_distance_is_kept(self, client, passenger):
        _, headers = passenger
        trip = await _create_trip(client, headers, distance_km=12.5, duration_minutes=30)
        assert trip["distance_km"] == pytest.approx(12.5)
        assert trip["duration_minutes"] == 30

    async def test_scheduled_trip_is_not_auto_matched(self, client, passenger, matching_mock):
        _, headers = passenger
        trip = await _create_trip(client, headers, scheduled_at="2026-11-01T09:00:00Z")
        assert trip["scheduled_at"] is not None
        matching_mock.assert_not_called()

    async def test_one_way_drops_return_time(self, client, passenger):
        _, headers = passenger
        trip = await _create_trip(client, headers, return_scheduled_at="2026-11-01T18:00:00Z")
        assert trip["is_round_trip"] is False
        assert trip["return_scheduled_at"] is None

    async def test_drivers_cannot_request_trips(self, client, driver):
        _, headers = driver
        resp = await client.post("/v1/trips", headers=headers, json=TRIP_REQUEST)
        assert resp.status_code == 403

    async def test_idempotent_create(self, client, passenger, matching_mock):
        _, headers = passenger
        headers = {**headers, "Idempotency-Key": "req-001"}
        first = await client.post("/v1/trips", headers=headers, json=TRIP_REQUEST)
        second = await client.post("/v1/trips", headers=headers, json=TRIP_REQUEST)

        assert first.status_code == second.status_code == 201
        assert second.headers["X-Idempotency-Replay"] == "true"
        assert second.json()["id"] == first.json()["id"]
        matching_mock.assert_called_once()

    async def test_quote_round_trip_doubles(self, client, passenger):
        _, headers = passenger
        resp = await client.post("/v1/trips/quote", headers=headers, json={
            "origin": TRIP_REQUEST["origin"],
            "destination": TRIP_REQUEST["destination"],
            "vehicle_type": "SUV",
            "is_round_trip": True,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["price"]["total_price"] == pytest.approx(body["one_way_price"]["total_price"] * 2)
        assert body["route"]["distance_km"] > 0

    async def test_get_trip_of_someone_else(self, client, passenger, register):
        _, headers = passenger
        trip = await _create_trip(client, headers)
        _, stranger = await register()

        assert (await client.get(f"/v1/trips/{trip['id']}", headers=headers)).status_code == 200
        assert (await client.get(f"/v1/trips/{trip['id']}", headers=stranger)).status_code == 404

    async def test_get_nonexistent_trip(self, client, passenger):
        _, headers = passenger
        resp = await client.get("/v1/trips/nonexistent-uuid", headers=headers)
        assert resp.status_code == 404

    async def test_available_trips_for_drivers_only(self, client, passenger, driver):
        _, p_headers = passenger
        _, d_headers = driver
        trip = await _create_trip(client, p_headers)
        await _create_trip(client, p_headers, preferred_vehicle_type="VAN")

        resp = await client.get("/v1/trips/available", headers=d_headers)
        assert resp.status_code == 200
        assert [t["id"] for t in resp.json()] == [trip["id"]]

        assert (await client.get("/v1/trips/available", headers=p_headers)).status_code == 403

    async def test_list_trips_by_status(self, client, passenger):
        _, headers = passenger
        trip = await _create_trip(client, headers)
        await client.post(f"/v1/trips/{trip['id']}/cancel", headers=headers, json={})
        await _create_trip(client, headers)

        resp = await client.get("/v1/trips", headers=headers, params={"trip_status": "CANCELLED"})
        assert [t["id"] for t in resp.json()] == [trip["id"]]
        assert len((await client.get("/v1/trips", headers=headers)).json()) == 2


@pytest.mark.asyncio
class TestDriverFlow:
    async def test_accept_and_start(self, client, passenger, driver):
        _, p_headers = passenger
        user, d_headers = driver
        trip = await _create_trip(client, p_headers)

        started = await _accept_and_start(client, driver, trip["id"])
        assert started["status"] == "IN_PROGRESS"
        assert started["driver_id"] == user["id"]
        assert started["started_at"] is not None

        me = (await client.get("/v1/users/me", headers=d_headers)).json()
        assert me["driver_status"] == "on_trip"

    async def test_busy_driver_cannot_accept_again(self, client, passenger, driver):
        _, p_headers = passenger
        user, d_headers = driver
        first = await _create_trip(client, p_headers)
        second = await _create_trip(client, p_headers)
        await _accept_and_start(client, driver, first["id"])

        resp = await client.post(
            f"/v1/drivers/{user['id']}/accept", headers=d_headers, json={"trip_id": second["id"]}
        )
        assert resp.status_code == 409

    async def test_trip_taken_by_another_driver(self, client, passenger, driver, register):
        _, p_headers = passenger
        trip = await _create_trip(client, p_headers)
        await _accept_and_start(client, driver, trip["id"])

        other, o_headers = await register(role="DRIVER", vehicle_type="SEDAN")
        await client.patch(f"/v1/drivers/{other['id']}/status", params={"new_status": "available"}, headers=o_headers)
        resp = await client.post(f"/v1/drivers/{other['id']}/accept", headers=o_headers, json={"trip_id": trip["id"]})
        assert resp.status_code == 409

    async def test_vehicle_type_mismatch(self, client, passenger, driver):
        _, p_headers = passenger
        user, d_headers = driver
        trip = await _create_trip(client, p_headers, preferred_vehicle_type="MINIBUS")
        resp = await client.post(f"/v1/drivers/{user['id']}/accept", headers=d_headers, json={"trip_id": trip["id"]})
        assert resp.status_code == 409

    async def test_cannot_act_for_another_driver(self, client, driver, register):
        other, _ = await register(role="DRIVER")
        _, headers = driver
        resp = await client.patch(
            f"/v1/drivers/{other['id']}/status", params={"new_status": "available"}, headers=headers
        )
        assert resp.status_code == 403

    async def test_on_trip_status_is_not_settable(self, client, driver):
        user, headers = driver
        resp = await client.patch(
            f"/v1/drivers/{user['id']}/status", params={"new_status": "on_trip"}, headers=headers
        )
        assert resp.status_code == 400

    async def test_going_offline_leaves_geo_index(self, client, driver, fake_redis, session_factory, monkeypatch):
        monkeypatch.setattr("ridepay.routers.drivers.AsyncSessionLocal", session_factory)
        user, headers = driver
        resp = await client.post(f"/v1/drivers/{user['id']}/location", headers=headers, json={"lat": -33.44, "lng": -70.65})
        assert resp.status_code == 204
        assert user["id"] in fake_redis.geo["drivers:geo:sedan"]

        await client.patch(f"/v1/drivers/{user['id']}/status", params={"new_status": "offline"}, headers=headers)
        assert user["id"] not in fake_redis.geo["drivers:geo:sedan"]
        assert user["id"] not in fake_redis.geo["drivers:geo:any"]

    async def test_start_requires_assignment(self, client, passenger, driver):
        _, p_headers = passenger
        _, d_headers = driver
        trip = await _create_trip(client, p_headers)
        resp = await client.post(f"/v1/trips/{trip['id']}/start", headers=d_headers)
        assert resp.status_code == 403

    async def test_complete_before_start(self, client, passenger, driver):
        _, p_headers = passenger
        user, d_headers = driver
        trip = await _create_trip(client, p_headers)
        await client.post(f"/v1/drivers/{user['id']}/accept", headers=d_headers, json={"trip_id": trip["id"]})
        resp = await client.post(
            f"/v1/trips/{trip['id']}/complete", headers=d_headers, json={"payment_method": "CASH"}
        )
        assert resp.status_code == 409


@pytest.mark.asyncio
class TestCashSettlement:
    async def test_cash_completes_immediately(self, client, passenger, driver):
        _, p_headers = passenger
        _, d_headers = driver
        trip = await _create_trip(client, p_headers)
        await _accept_and_start(client, driver, trip["id"])

        resp = await client.post(
            f"/v1/trips/{trip['id']}/complete", headers=d_headers, json={"payment_method": "CASH"}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["trip"]["status"] == "COMPLETED"
        assert body["payment_status"] == "COMPLETED"
        assert body["stellar"] is None

        me = (await client.get("/v1/users/me", headers=d_headers)).json()
        assert me["driver_status"] == "available"

        again = await client.post(f"/v1/trips/{trip['id']}/cancel", headers=p_headers, json={})
        assert again.status_code == 409


@pytest.mark.asyncio
class TestStellarSettlement:
    async def test_stellar_requires_driver_wallet(self, client, passenger, driver):
        _, p_headers = passenger
        _, d_headers = driver
        trip = await _create_trip(client, p_headers)
        await _accept_and_start(client, driver, trip["id"])

        resp = await client.post(
            f"/v1/trips/{trip['id']}/complete", headers=d_headers, json={"payment_method": "STELLAR"}
        )
        assert resp.status_code == 409

    async def test_complete_issues_payment_qr(self, client, passenger, driver):
        _, p_headers = passenger
        trip, address, body = await _complete_with_stellar(client, passenger, driver)

        assert body["trip"]["status"] == "IN_PROGRESS"
        assert body["payment_status"] == "PENDING"
        stellar = body["stellar"]
        assert stellar["payment_address"] == address
        assert stellar["qr_code"].startswith("data:image/png;base64,")
        assert stellar["payment_url"].startswith(f"web+stellar:pay?destination={address}")
        assert stellar["transaction_xdr"]
        assert float(stellar["xlm_amount"]) == pytest.approx(body["trip"]["total_price"] * 0.0042, abs=1e-6)

        info = (await client.get(f"/v1/payments/trip/{trip['id']}", headers=p_headers)).json()
        assert info["trip"]["payment_address"] == address
        assert info["trip"]["transaction_xdr"] == stellar["transaction_xdr"]
        assert info["payment"]["id"] == body["payment_id"]
        assert info["payment"]["status"] == "PENDING"

    async def test_second_completion_is_rejected(self, client, passenger, driver):
        _, d_headers = driver
        trip, _, _ = await _complete_with_stellar(client, passenger, driver)
        resp = await client.post(
            f"/v1/trips/{trip['id']}/complete", headers=d_headers, json={"payment_method": "STELLAR"}
        )
        assert resp.status_code == 409

    async def test_verify_settles_trip(self, client, passenger, driver, horizon):
        _, p_headers = passenger
        _, d_headers = driver
        trip, address, body = await _complete_with_stellar(client, passenger, driver)
        _pay_on_horizon(horizon, TX_HASH, address, body)

        resp = await client.post(
            f"/v1/payments/{body['payment_id']}/verify", headers=p_headers, json={"transaction_id": TX_HASH}
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["verified"] is True
        assert resp.json()["payment"]["status"] == "COMPLETED"
        assert resp.json()["payment"]["transaction_id"] == TX_HASH

        settled = (await client.get(f"/v1/trips/{trip['id']}", headers=p_headers)).json()
        assert settled["status"] == "COMPLETED"
        assert settled["stellar_transaction_id"] == TX_HASH
        assert settled["completed_at"] is not None

        me = (await client.get("/v1/users/me", headers=d_headers)).json()
        assert me["driver_status"] == "available"

        again = await client.post(
            f"/v1/payments/{body['payment_id']}/verify", headers=p_headers, json={"transaction_id": TX_HASH}
        )
        assert again.status_code == 400
        assert "already COMPLETED" in again.json()["detail"]

    async def test_underpayment_is_rejected(self, client, passenger, driver, horizon):
        _, p_headers = passenger
        trip, address, body = await _complete_with_stellar(client, passenger, driver)
        short = str(float(body["stellar"]["xlm_amount"]) * 0.5)
        _pay_on_horizon(horizon, TX_HASH, address, body)
        horizon.operations[TX_HASH][0]["amount"] = short

        resp = await client.post(
            f"/v1/payments/{body['payment_id']}/verify", headers=p_headers, json={"transaction_id": TX_HASH}
        )
        assert resp.status_code == 400
        trip_now = (await client.get(f"/v1/trips/{trip['id']}", headers=p_headers)).json()
        assert trip_now["status"] == "IN_PROGRESS"

    async def test_only_payer_can_verify(self, client, passenger, driver):
        _, d_headers = driver
        _, _, body = await _complete_with_stellar(client, passenger, driver)
        resp = await client.post(
            f"/v1/payments/{body['payment_id']}/verify", headers=d_headers, json={"transaction_id": TX_HASH}
        )
        assert resp.status_code == 403

    async def test_submit_relays_and_settles(self, client, passenger, driver, horizon):
        _, p_headers = passenger
        trip, address, body = await _complete_with_stellar(client, passenger, driver)
        horizon.submit_response = (200, {"hash": TX_HASH, "successful": True})
        _pay_on_horizon(horizon, TX_HASH, address, body)

        resp = await client.post(
            f"/v1/payments/{body['payment_id']}/submit", headers=p_headers, json={"signed_xdr": "AAAA-signed"}
        )
        assert resp.status_code == 200, resp.text
        assert horizon.submitted == ["AAAA-signed"]
        settled = (await client.get(f"/v1/trips/{trip['id']}", headers=p_headers)).json()
        assert settled["status"] == "COMPLETED"

    async def test_submit_rejected_by_horizon(self, client, passenger, driver):
        _, p_headers = passenger
        _, _, body = await _complete_with_stellar(client, passenger, driver)
        resp = await client.post(
            f"/v1/payments/{body['payment_id']}/submit", headers=p_headers, json={"signed_xdr": "AAAA-signed"}
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "tx_bad_seq"

    async def test_submitted_but_unverified_returns_hash(self, client, passenger, driver, horizon):
        _, p_headers = passenger
        trip, _, body = await _complete_with_stellar(client, passenger, driver)
        # Horizon accepts the envelope but has no record of it yet
        horizon.submit_response = (200, {"hash": TX_HASH, "successful": True})

        resp = await client.post(
            f"/v1/payments/{body['payment_id']}/submit", headers=p_headers, json={"signed_xdr": "AAAA-signed"}
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["transaction_id"] == TX_HASH
        assert resp.json()["detail"]["message"]

        info = (await client.get(f"/v1/payments/trip/{trip['id']}", headers=p_headers)).json()
        assert info["payment"]["status"] == "PENDING"

    async def test_transaction_hash_settles_only_one_payment(self, client, passenger, driver, horizon):
        _, p_headers = passenger
        _, first_address, first = await _complete_with_stellar(client, passenger, driver)
        _pay_on_horizon(horizon, TX_HASH, first_address, first)
        resp = await client.post(
            f"/v1/payments/{first['payment_id']}/verify", headers=p_headers, json={"transaction_id": TX_HASH}
        )
        assert resp.status_code == 200, resp.text

        # Same driver, same fare, and the passenger replays the first hash
        second_trip, _, second = await _complete_with_stellar(client, passenger, driver)
        assert second["payment_id"] != first["payment_id"]
        resp = await client.post(
            f"/v1/payments/{second['payment_id']}/verify", headers=p_headers, json={"transaction_id": TX_HASH}
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Transaction already used for another payment"

        trip_now = (await client.get(f"/v1/trips/{second_trip['id']}", headers=p_headers)).json()
        assert trip_now["status"] == "IN_PROGRESS"

    async def test_memo_must_match_trip(self, client, passenger, driver, horizon):
        _, p_headers = passenger
        trip, address, body = await _complete_with_stellar(client, passenger, driver)
        _pay_on_horizon(horizon, TX_HASH, address, body, memo="TRP-OTHER")

        resp = await client.post(
            f"/v1/payments/{body['payment_id']}/verify", headers=p_headers, json={"transaction_id": TX_HASH}
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Transaction memo does not match"
        trip_now = (await client.get(f"/v1/trips/{trip['id']}", headers=p_headers)).json()
        assert trip_now["status"] == "IN_PROGRESS"

    async def test_regenerate_qr_keeps_payment(self, client, passenger, driver):
        _, p_headers = passenger
        trip, _, body = await _complete_with_stellar(client, passenger, driver)
        resp = await client.post(f"/v1/trips/{trip['id']}/payment-qr", headers=p_headers)
        assert resp.status_code == 200
        assert resp.json()["payment_id"] == body["payment_id"]

    async def test_regenerate_qr_without_pending_payment(self, client, passenger):
        _, p_headers = passenger
        trip = await _create_trip(client, p_headers)
        resp = await client.post(f"/v1/trips/{trip['id']}/payment-qr", headers=p_headers)
        assert resp.status_code == 404


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_pending_trip(self, client, passenger):
        user, headers = passenger
        trip = await _create_trip(client, headers)
        resp = await client.post(f"/v1/trips/{trip['id']}/cancel", headers=headers, json={"reason": "Changed plans"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "CANCELLED"
        assert body["cancelled_by"] == user["id"]
        assert body["cancellation_reason"] == "Changed plans"
        assert body["cancelled_at"] is not None

        again = await client.post(f"/v1/trips/{trip['id']}/cancel", headers=headers, json={})
        assert again.status_code == 409

    async def test_cancel_frees_driver(self, client, passenger, driver):
        _, p_headers = passenger
        user, d_headers = driver
        trip = await _create_trip(client, p_headers)
        await client.post(f"/v1/drivers/{user['id']}/accept", headers=d_headers, json={"trip_id": trip["id"]})

        resp = await client.post(f"/v1/trips/{trip['id']}/cancel", headers=d_headers, json={})
        assert resp.status_code == 200
        assert resp.json()["cancelled_by"] == user["id"]
        me = (await client.get("/v1/users/me", headers=d_headers)).json()
        assert me["driver_status"] == "available"

    async def test_cancel_voids_pending_stellar_payment(self, client, passenger, driver):
        _, p_headers = passenger
        trip, _, _ = await _complete_with_stellar(client, passenger, driver)

        resp = await client.post(f"/v1/trips/{trip['id']}/cancel", headers=p_headers, json={})
        assert resp.status_code == 200
        info = (await client.get(f"/v1/payments/trip/{trip['id']}", headers=p_headers)).json()
        assert info["payment"] is None

    async def test_outsider_cannot_cancel(self, client, passenger, register):
        _, headers = passenger
        trip = await _create_trip(client, headers)
        _, stranger = await register()
        resp = await client.post(f"/v1/trips/{trip['id']}/cancel", headers=stranger, json={})
        assert resp.status_code == 404
