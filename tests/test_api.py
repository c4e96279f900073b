"""API integration tests for the Expense Sync service."""

from fastapi.testclient import TestClient

HTTP_200_OK = 200
HTTP_400_BAD_REQUEST = 400
HTTP_401_UNAUTHORIZED = 401
HTTP_404_NOT_FOUND = 404
U1 = {"X-User-Id": "U1"}
U2 = {"X-User-Id": "U2"}

PAYLOAD = {
    "categories": [{"name": "Food", "color": "#FF0000"}],
    "transactions": [{"amount": 20, "type": "expense", "date": "2025-09-01", "categories": ["Food"]}],
}


def _expect_status(response: object, expected: int) -> dict:
    if response.status_code != expected:
        msg = f"Expected status {expected}, got {response.status_code}: {response.text}"
        raise AssertionError(msg)
    return response.json()


def test_health(client: TestClient) -> None:
    """Test the /health endpoint returns status ok."""
    response = client.get("/health")
    if response.status_code != HTTP_200_OK:
        msg = f"Expected status {HTTP_200_OK}, got {response.status_code}"
        raise AssertionError(msg)
    if response.json() != {"status": "ok"}:
        msg = f"Expected response {{'status': 'ok'}}, got {response.json()}"
        raise AssertionError(msg)


def test_scalar_docs(client: TestClient) -> None:
    """Test the /scalar endpoint returns OpenAPI or Swagger docs."""
    response = client.get("/scalar")
    if response.status_code != HTTP_200_OK:
        msg = f"Expected status {HTTP_200_OK}, got {response.status_code}"
        raise AssertionError(msg)
    if not ("openapi" in response.text or "swagger" in response.text):
        msg = "Expected 'openapi' or 'swagger' in response text"
        raise AssertionError(msg)


def test_identity_is_required(client: TestClient) -> None:
    body = _expect_status(client.get("/sync/status"), HTTP_401_UNAUTHORIZED)
    if body["success"] or body["error_type"] != "AUTH" or body["retryable"]:
        msg = f"Unexpected auth error body {body}"
        raise AssertionError(msg)


def test_upload_download_and_status(client: TestClient) -> None:
    body = _expect_status(client.post("/sync/upload", json=PAYLOAD, headers=U1), HTTP_200_OK)
    if body["results"]["categories"]["created"] != 1 or body["results"]["transactions"]["created"] != 1:
        msg = f"Unexpected upload results {body}"
        raise AssertionError(msg)

    data = _expect_status(client.get("/sync/download", headers=U1), HTTP_200_OK)["data"]
    if data["transactions"][0]["category_names"] != ["Food"] or data["transactions"][0]["amount"] != 20:
        msg = f"Unexpected downloaded data {data}"
        raise AssertionError(msg)

    status = _expect_status(client.get("/sync/status", headers=U1), HTTP_200_OK)["status"]
    if (status["categories_count"], status["transactions_count"]) != (1, 1) or not status["last_sync"]:
        msg = f"Unexpected status {status}"
        raise AssertionError(msg)

    other = _expect_status(client.get("/sync/status", headers=U2), HTTP_200_OK)["status"]
    if other["categories_count"] != 0:
        msg = "Expected U2 not to see U1's data"
        raise AssertionError(msg)


def test_invalid_upload_is_rejected(client: TestClient) -> None:
    bad = {"transactions": [{"amount": 0, "type": "expense", "date": "2025-09-01"}]}
    body = _expect_status(client.post("/sync/upload", json=bad, headers=U1), HTTP_400_BAD_REQUEST)
    if body["error_type"] != "VALIDATION" or "Item 1: Transaction amount too small" not in body["error"]:
        msg = f"Unexpected validation error body {body}"
        raise AssertionError(msg)
    if body["details"]["errors"][0]["field"] != "transaction.amount":
        msg = f"Expected field-level details, got {body['details']}"
        raise AssertionError(msg)
    status = _expect_status(client.get("/sync/status", headers=U1), HTTP_200_OK)["status"]
    if status["transactions_count"] != 0:
        msg = "Expected nothing to be written"
        raise AssertionError(msg)


def test_full_sync(client: TestClient) -> None:
    body = _expect_status(client.post("/sync/full", json=PAYLOAD, headers=U1), HTTP_200_OK)
    results = body["results"]
    if results["upload"]["categories"]["created"] != 1 or len(results["download"]["categories"]) != 1:
        msg = f"Unexpected full sync results {results}"
        raise AssertionError(msg)


def test_job_endpoints(client: TestClient) -> None:
    _expect_status(client.post("/jobs/sync", json={"type": "weekly"}, headers=U1), HTTP_400_BAD_REQUEST)
    _expect_status(client.get("/jobs/missing", headers=U1), HTTP_404_NOT_FOUND)

    created = _expect_status(client.post("/jobs/sync", json=PAYLOAD, headers=U1), HTTP_200_OK)["job"]
    if created["job_type"] != "upload" or created["status"] != "pending" or created["total_items"] != 2:
        msg = f"Unexpected created job {created}"
        raise AssertionError(msg)
    job_id = created["id"]

    _expect_status(client.get(f"/jobs/{job_id}", headers=U2), HTTP_404_NOT_FOUND)
    job = _expect_status(client.get(f"/jobs/{job_id}", headers=U1), HTTP_200_OK)["job"]
    if "payload" in job or job["progress"] != 0:
        msg = f"Unexpected job view {job}"
        raise AssertionError(msg)

    listed = _expect_status(client.get("/jobs", params={"limit": 5}, headers=U1), HTTP_200_OK)
    if listed["total"] != 1 or "payload" in listed["jobs"][0] or "results" in listed["jobs"][0]:
        msg = f"Unexpected job list {listed}"
        raise AssertionError(msg)

    cancelled = _expect_status(client.delete(f"/jobs/{job_id}", headers=U1), HTTP_200_OK)
    if cancelled["job"]["status"] != "failed" or cancelled["job"]["error_message"] != "Cancelled by user":
        msg = f"Unexpected cancel response {cancelled}"
        raise AssertionError(msg)
    again = _expect_status(client.delete(f"/jobs/{job_id}", headers=U1), HTTP_400_BAD_REQUEST)
    if "Only pending jobs can be cancelled" not in again["message"]:
        msg = f"Unexpected second cancel response {again}"
        raise AssertionError(msg)


def test_non_object_bodies_are_validation_errors(client: TestClient) -> None:
    for path in ("/sync/upload", "/sync/full", "/jobs/sync"):
        body = _expect_status(client.post(path, json=[PAYLOAD], headers=U1), HTTP_400_BAD_REQUEST)
        if body["error_type"] != "VALIDATION" or body["details"]["errors"][0]["field"] != "payload":
            msg = f"Expected a payload validation error from {path}, got {body}"
            raise AssertionError(msg)
    if _expect_status(client.get("/jobs", headers=U1), HTTP_200_OK)["total"] != 0:
        msg = "Expected no job to be stored for a rejected body"
        raise AssertionError(msg)


def test_huge_amount_is_a_validation_error(client: TestClient) -> None:
    bad = {"transactions": [{"amount": 10**400, "type": "expense", "date": "2025-09-01"}]}
    for path in ("/sync/upload", "/jobs/sync"):
        body = _expect_status(client.post(path, json=bad, headers=U1), HTTP_400_BAD_REQUEST)
        if "Transaction amount too large" not in body["error"]:
            msg = f"Expected the amount to be rejected by {path}, got {body}"
            raise AssertionError(msg)
