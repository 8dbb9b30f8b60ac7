from app.models.rate_limit import RateLimitPolicy
from app.services.csv_import import result_key

from conftest import CSV_HEADER, as_user

ROWS = (
    "Broken light,Lamp out since Monday,2,40.41,-3.70,Ana Garcia,medium,new\n"
    "Fallen tree,Blocking the path,999,40.44,-3.73,Luis Perez,high,new\n"
    "Pothole,Deep hole,1,40.42,-3.71,Ana Garcia,high,new\n"
)


def _upload(client, content: str, filename: str = "incidents.csv", headers=None):
    return client.post(
        "/imports",
        files={"csv_file": (filename, content.encode("utf-8"), "text/csv")},
        headers=headers if headers is not None else as_user(),
    )


def test_upload_then_poll_until_completed(client, services):
    accepted = _upload(client, CSV_HEADER + ROWS)
    assert accepted.status_code == 202, accepted.text
    body = accepted.json()
    assert body["status"] == "processing"
    assert body["import_id"].startswith("import_")

    client.portal.call(services.import_runner.join)

    status = client.get(f"/imports/{body['import_id']}")
    assert status.status_code == 200
    data = status.json()
    assert data["status"] == "completed"
    assert data["import_id"] == body["import_id"]
    assert (data["results"]["success"], data["results"]["errors"], data["results"]["total"]) == (2, 1, 3)
    assert data["results"]["error_details"] == [
        {
            "row": 3,
            "error": "Invalid category ID: 999",
            "data": ["Fallen tree", "Blocking the path", "999", "40.44", "-3.73", "Luis Perez", "high", "new"],
        }
    ]


def test_unknown_import_is_404(client):
    response = client.get("/imports/import_does_not_exist")
    assert response.status_code == 404
    assert response.json() == {
        "import_id": "import_does_not_exist",
        "status": "not_found",
        "message": "Import not found or has expired",
    }


def test_progress_is_reported_before_completion(client, services):
    async def stop_workers() -> None:
        await services.import_runner.stop()

    client.portal.call(stop_workers)

    accepted = _upload(client, CSV_HEADER + ROWS)
    status = client.get(f"/imports/{accepted.json()['import_id']}")

    assert status.status_code == 200
    assert status.json()["status"] == "processing"
    assert status.json()["processed"] == 0


def test_wrong_extension_is_rejected(client):
    response = _upload(client, CSV_HEADER + ROWS, filename="incidents.xlsx")
    assert response.status_code == 422


def test_upload_requires_a_principal(client):
    response = _upload(client, CSV_HEADER + ROWS, headers={})
    assert response.status_code == 401


def test_oversized_upload_is_413(client, services):
    services.settings = services.settings.model_copy(update={"IMPORT_MAX_UPLOAD_BYTES": 64})
    response = _upload(client, CSV_HEADER + ROWS * 10)
    assert response.status_code == 413


def test_csv_import_is_rate_limited(client, services):
    async def tighten() -> None:
        async with services.session_factory() as session:
            session.add(RateLimitPolicy(name="csv-import", max_attempts=1, time_unit="day", time_value=1))
            await session.commit()

    client.portal.call(tighten)

    assert _upload(client, CSV_HEADER + ROWS).status_code == 202
    throttled = _upload(client, CSV_HEADER + ROWS.upper())

    assert throttled.status_code == 429
    body = throttled.json()
    assert body["action"] == "csv-import"
    assert body["max_attempts"] == 1
    assert 1 <= body["retry_after"] <= 86400
    assert throttled.headers["Retry-After"] == str(body["retry_after"])


def test_upload_retry_with_same_key_is_replayed(client, services):
    headers = {**as_user(), "Idempotency-Key": "upload-batch-7"}
    first = _upload(client, CSV_HEADER + ROWS, headers=headers)
    second = _upload(client, CSV_HEADER + ROWS, headers=headers)

    assert second.status_code == 202
    assert second.headers["Idempotency-Replayed"] == "true"
    assert second.json()["import_id"] == first.json()["import_id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_uploads_without_a_key_are_not_collapsed(client):
    first = _upload(client, CSV_HEADER + ROWS)
    second = _upload(client, CSV_HEADER + ROWS)

    assert first.status_code == second.status_code == 202
    assert "Idempotency-Replayed" not in second.headers
    assert first.json()["import_id"] != second.json()["import_id"]


def test_completed_import_survives_a_missing_cached_result(client, services):
    import_id = _upload(client, CSV_HEADER + ROWS).json()["import_id"]
    client.portal.call(services.import_runner.join)
    client.portal.call(services.cache.delete, result_key(import_id))

    data = client.get(f"/imports/{import_id}").json()

    assert data["status"] == "completed"
    assert (data["results"]["success"], data["results"]["errors"], data["results"]["total"]) == (2, 1, 3)
    assert data["results"]["error_details"][0]["error"] == "Invalid category ID: 999"
