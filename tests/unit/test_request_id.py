def test_request_id_is_added(client) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.headers.get("x-request-id")


def test_request_ids_are_unique(client) -> None:
    first = client.get("/healthz").headers["x-request-id"]
    second = client.get("/healthz").headers["x-request-id"]
    assert first != second
