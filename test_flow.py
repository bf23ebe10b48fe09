import httpx
import asyncio
import uuid

from stellar_sdk import Keypair


BASE_URL = "http://localhost:8000"


async def safe_request(resp: httpx.Response, step: str):
    """Print response + fail loudly if error"""
    print(f"{step}: {resp.status_code}")

    try:
        body = resp.json()
        if isinstance(body, dict) and "qr_code" in body:
            body = {**body, "qr_code": body["qr_code"][:40] + "..."}
        print(body)
    except Exception:
        print(resp.text)

    resp.raise_for_status()


async def register(client: httpx.AsyncClient, step: str, **payload) -> tuple[str, dict]:
    resp = await client.post(f"{BASE_URL}/v1/users", json=payload)
    await safe_request(resp, step)
    data = resp.json()
    return data["user"]["id"], {"Authorization": f"Bearer {data['access_token']}"}


async def main():

    async with httpx.AsyncClient(timeout=30.0) as client:

        # ---------------------------------------------------
        print("\n1️⃣ Checking Health...")
        resp = await client.get(f"{BASE_URL}/health")
        await safe_request(resp, "Health")

        # ---------------------------------------------------
        print("\n2️⃣ Registering Driver and Passenger...")
        suffix = uuid.uuid4().hex[:8]
        driver_id, driver_headers = await register(
            client,
            "Register Driver",
            email=f"driver-{suffix}@example.cl",
            name="Test Driver",
            role="DRIVER",
            vehicle_type="SEDAN",
        )
        _, passenger_headers = await register(
            client,
            "Register Passenger",
            email=f"passenger-{suffix}@example.cl",
            name="Test Passenger",
        )

        # ---------------------------------------------------
        print("\n3️⃣ Driver connects a Stellar wallet...")
        resp = await client.put(
            f"{BASE_URL}/v1/wallet/address",
            json={"stellar_address": Keypair.random().public_key},
            headers=driver_headers,
        )
        await safe_request(resp, "Connect Wallet")

        # ---------------------------------------------------
        print("\n4️⃣ Driver goes online...")
        resp = await client.patch(
            f"{BASE_URL}/v1/drivers/{driver_id}/status",
            params={"new_status": "available"},
            headers=driver_headers,
        )
        await safe_request(resp, "Driver Online")

        # ---------------------------------------------------
        print("\n5️⃣ Driver sends location...")
        resp = await client.post(
            f"{BASE_URL}/v1/drivers/{driver_id}/location",
            json={"lat": -33.4378, "lng": -70.6504},
            headers=driver_headers,
        )
        await safe_request(resp, "Send Location")

        # ---------------------------------------------------
        print("\n6️⃣ Passenger requests trip...")
        trip_payload = {
            "origin": {"address": "Plaza de Armas, Santiago", "lat": -33.4378, "lng": -70.6504, "country": "CL"},
            "destination": {"address": "Costanera Center, Providencia", "lat": -33.4173, "lng": -70.6063},
            "preferred_vehicle_type": "SEDAN",
        }
        resp = await client.post(
            f"{BASE_URL}/v1/trips",
            json=trip_payload,
            headers={**passenger_headers, "Idempotency-Key": str(uuid.uuid4())},
        )
        await safe_request(resp, "Create Trip")
        trip_id = resp.json()["id"]

        # ---------------------------------------------------
        print("\n7️⃣ Waiting for matching...")
        await asyncio.sleep(1)
        resp = await client.get(f"{BASE_URL}/v1/trips/{trip_id}", headers=passenger_headers)
        await safe_request(resp, "Trip Status")

        if resp.json()["status"] == "PENDING":
            resp = await client.post(
                f"{BASE_URL}/v1/drivers/{driver_id}/accept",
                json={"trip_id": trip_id},
                headers=driver_headers,
            )
            await safe_request(resp, "Accept Trip")

        # ---------------------------------------------------
        print("\n8️⃣ Starting Trip...")
        resp = await client.post(f"{BASE_URL}/v1/trips/{trip_id}/start", headers=driver_headers)
        await safe_request(resp, "Start Trip")

        # ---------------------------------------------------
        print("\n9️⃣ Completing Trip with Stellar payment...")
        resp = await client.post(
            f"{BASE_URL}/v1/trips/{trip_id}/complete",
            json={"payment_method": "STELLAR"},
            headers=driver_headers,
        )
        await safe_request(resp, "Complete Trip")
        stellar = resp.json()["stellar"]
        print(f"   Pay {stellar['xlm_amount']} XLM to {stellar['payment_address']}")

        resp = await client.get(f"{BASE_URL}/v1/payments/trip/{trip_id}", headers=passenger_headers)
        await safe_request(resp, "Payment Info")

        print("\n✅ FLOW COMPLETED: scan the QR with a testnet wallet, then POST /v1/payments/{id}/verify")


if __name__ == "__main__":
    asyncio.run(main())
