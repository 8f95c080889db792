import pytest

COMPANY_ID = "company-1"
SITE_ID = "site-1"


def _body(action: str, **overrides: object) -> dict[str, object]:
    body: dict[str, object] = {
        "action": action,
        "scope": "company",
        "scopeId": COMPANY_ID,
        "providerKey": "anthropic",
    }
    body.update(overrides)
    return body


def test_set_check_delete_lifecycle(client, headers_for, store, codec) -> None:
    headers = headers_for("token-company-admin")

    created = client.post(
        "/v1/integrations/secrets",
        headers=headers,
        json=_body("set", secrets={"api_key": "sk-ant-123", "org_id": "org-9"}),
    )
    assert created.status_code == 200
    assert created.json() == {"success": True}

    stored = store.get_secret("company", COMPANY_ID, "anthropic", "api_key")
    assert stored is not None
    assert stored.encrypted_value.startswith("encV1:")
    assert "sk-ant-123" not in stored.encrypted_value
    assert codec.decrypt(stored.encrypted_value) == "sk-ant-123"

    integration = store.get_integration("company", COMPANY_ID, "anthropic")
    assert integration is not None
    assert integration.secret_ref == f"company:{COMPANY_ID}:anthropic"
    assert integration.secret_configured_at is not None

    checked = client.post("/v1/integrations/secrets", headers=headers, json=_body("check"))
    assert checked.status_code == 200
    status = checked.json()
    assert status["configured"] is True
    assert status["secretKeys"] == ["api_key", "org_id"]
    assert status["lastUpdated"] is not None
    assert "sk-ant-123" not in checked.text

    deleted = client.post("/v1/integrations/secrets", headers=headers, json=_body("delete"))
    assert deleted.status_code == 200
    assert deleted.json() == {"success": True}
    assert store.list_secrets("company", COMPANY_ID, "anthropic") == []
    assert store.get_integration("company", COMPANY_ID, "anthropic").secret_ref is None

    after = client.post("/v1/integrations/secrets", headers=headers, json=_body("check"))
    assert after.json() == {"configured": False, "secretKeys": [], "lastUpdated": None}


def test_secret_management_writes_no_usage_rows(client, headers_for, store) -> None:
    client.post(
        "/v1/integrations/secrets",
        headers=headers_for("token-company-admin"),
        json=_body("set", secrets={"api_key": "sk-ant-123"}),
    )

    assert store.usage_logs == []


@pytest.mark.parametrize("secrets", [None, {}])
def test_set_without_secrets_is_rejected(client, headers_for, secrets) -> None:
    response = client.post(
        "/v1/integrations/secrets",
        headers=headers_for("token-company-admin"),
        json=_body("set", secrets=secrets),
    )

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "validation"


def test_unknown_action_is_rejected(client, headers_for) -> None:
    response = client.post(
        "/v1/integrations/secrets",
        headers=headers_for("token-company-admin"),
        json=_body("rotate"),
    )

    assert response.status_code == 400


def test_plain_member_cannot_manage_company_secrets(client, auth_headers) -> None:
    response = client.post(
        "/v1/integrations/secrets",
        headers=auth_headers,
        json=_body("set", secrets={"api_key": "sk-x"}),
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"


def test_site_admin_can_manage_company_and_site_secrets(client, headers_for, store) -> None:
    headers = headers_for("token-site-admin")

    company = client.post(
        "/v1/integrations/secrets", headers=headers, json=_body("set", secrets={"api_key": "a"})
    )
    site = client.post(
        "/v1/integrations/secrets",
        headers=headers,
        json=_body("set", scope="site", scopeId=SITE_ID, secrets={"api_key": "b"}),
    )

    assert company.status_code == 200
    assert site.status_code == 200
    assert store.get_secret("site", SITE_ID, "anthropic", "api_key") is not None


def test_company_admin_cannot_manage_site_secrets(client, headers_for) -> None:
    response = client.post(
        "/v1/integrations/secrets",
        headers=headers_for("token-company-admin"),
        json=_body("check", scope="site", scopeId=SITE_ID),
    )

    assert response.status_code == 403


def test_secret_endpoint_requires_bearer(client) -> None:
    response = client.post("/v1/integrations/secrets", json=_body("check"))

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "auth_missing"
