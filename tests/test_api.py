from tests.conftest import auth_headers

WELCOME = {
    "name": "welcome_email",
    "subjectTemplate": "Welcome, {{userName}}!",
    "htmlBodyTemplate": "<p>Hi {{userName}}</p>",
    "textBodyTemplate": "Hi {{userName}}, enjoy {{product}}",
    "defaultFromEmail": "hello@x.com",
    "defaultFromName": "Mailflow",
}


async def enqueue(client, user, **overrides):
    payload = {
        "templateName": "welcome_email",
        "recipient": "alice@x.com",
        "variables": {"userName": "Alice", "product": "Mailflow"},
    }
    payload.update(overrides)
    return await client.post("/emails/", json=payload, headers=auth_headers(user))


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "Mailflow API running"


async def test_login_issues_token(client, users):
    response = await client.post("/token", data={"username": "alice", "password": "alice-pass"})
    assert response.status_code == 200
    token = response.json()["access_token"]

    listed = await client.get("/templates/", headers={"Authorization": f"Bearer {token}"})
    assert listed.status_code == 200


async def test_login_with_wrong_password(client, users):
    response = await client.post("/token", data={"username": "alice", "password": "nope"})
    assert response.status_code == 401


async def test_requests_without_token_are_rejected(client):
    assert (await client.get("/templates/")).status_code == 401
    assert (await client.post("/emails/", json={})).status_code == 401


async def test_admin_creates_template(client, users):
    response = await client.post("/templates/", json=WELCOME, headers=auth_headers(users["admin"]))

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["template"]["name"] == "welcome_email"
    assert body["template"]["subjectTemplate"] == "Welcome, {{userName}}!"
    assert body["template"]["isActive"] is True
    assert body["template"]["createdBy"] == "admin"

    fetched = await client.get("/templates/welcome_email", headers=auth_headers(users["bob"]))
    assert fetched.json()["template"]["defaultFromEmail"] == "hello@x.com"


async def test_non_admin_cannot_create_template(client, users):
    response = await client.post("/templates/", json=WELCOME, headers=auth_headers(users["alice"]))

    assert response.status_code == 403
    assert response.json() == {
        "success": False,
        "message": "You are not allowed to manage email templates",
        "code": "NOT_AUTHORIZED",
    }


async def test_duplicate_template_name(client, users):
    headers = auth_headers(users["admin"])
    await client.post("/templates/", json=WELCOME, headers=headers)
    response = await client.post("/templates/", json=WELCOME, headers=headers)

    assert response.status_code == 409
    assert response.json()["code"] == "DUPLICATE_NAME"


async def test_template_name_must_be_a_slug(client, users):
    response = await client.post(
        "/templates/", json={**WELCOME, "name": "welcome email!"}, headers=auth_headers(users["admin"])
    )
    assert response.status_code == 422


async def test_unknown_template(client, users):
    response = await client.get("/templates/missing", headers=auth_headers(users["alice"]))
    assert response.status_code == 404
    assert response.json()["code"] == "TEMPLATE_NOT_FOUND"


async def test_enqueue_returns_id_and_position(client, users, welcome_template):
    response = await enqueue(client, users["alice"])

    assert response.status_code == 202
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Email queued"
    assert body["queuePosition"] == 1
    assert isinstance(body["emailId"], int)

    second = await enqueue(client, users["bob"], recipient="bob@x.com")
    assert second.json()["queuePosition"] == 2


async def test_enqueue_with_missing_variable(client, users, welcome_template):
    response = await enqueue(client, users["alice"], variables={"userName": "Alice"})

    assert response.status_code == 422
    assert response.json()["code"] == "MISSING_VARIABLE"
    assert "product" in response.json()["message"]


async def test_enqueue_rejects_invalid_recipient(client, users, welcome_template):
    response = await enqueue(client, users["alice"], recipient="not-an-address")
    assert response.status_code == 422


async def test_enqueue_against_deactivated_template(client, users, welcome_template):
    patched = await client.patch(
        "/templates/welcome_email", json={"isActive": False}, headers=auth_headers(users["admin"])
    )
    assert patched.status_code == 200
    assert patched.json()["template"]["isActive"] is False

    response = await enqueue(client, users["alice"])
    assert response.status_code == 422
    assert response.json()["code"] == "TEMPLATE_INACTIVE"


async def test_status_is_visible_to_requester_only(client, users, welcome_template):
    email_id = (await enqueue(client, users["alice"])).json()["emailId"]

    mine = await client.get(f"/emails/{email_id}", headers=auth_headers(users["alice"]))
    assert mine.status_code == 200
    assert mine.json()["status"] == "Queued"
    assert mine.json()["subject"] == "Welcome, Alice!"
    assert mine.json()["toEmail"] == "alice@x.com"

    theirs = await client.get(f"/emails/{email_id}", headers=auth_headers(users["bob"]))
    assert theirs.status_code == 403
    admin = await client.get(f"/emails/{email_id}", headers=auth_headers(users["admin"]))
    assert admin.status_code == 200


async def test_cancel_and_history(client, users, welcome_template):
    headers = auth_headers(users["alice"])
    email_id = (await enqueue(client, users["alice"])).json()["emailId"]

    forbidden = await client.post(f"/emails/{email_id}/cancel", headers=auth_headers(users["bob"]))
    assert forbidden.status_code == 403

    cancelled = await client.post(f"/emails/{email_id}/cancel", headers=headers)
    assert cancelled.json() == {"success": True, "message": "Email cancelled"}
    again = await client.post(f"/emails/{email_id}/cancel", headers=headers)
    assert again.json() == {"success": True, "message": "Email was already cancelled"}

    history = await client.get(f"/emails/{email_id}/history", headers=headers)
    assert history.status_code == 200
    assert [row["action"] for row in history.json()] == ["Queued", "Cancelled"]
    assert history.json()[1]["details"] == "Cancelled by request"
    assert "createdAt" in history.json()[0]


async def test_cancel_unknown_email(client, users):
    response = await client.post("/emails/4242/cancel", headers=auth_headers(users["admin"]))
    assert response.status_code == 404
    assert response.json()["code"] == "EMAIL_NOT_FOUND"


async def test_send_test_email_fills_missing_variables(client, users, welcome_template):
    response = await client.post(
        "/templates/welcome_email/test",
        json={"recipient": "qa@x.com", "variables": {"userName": "Ann"}},
        headers=auth_headers(users["admin"]),
    )

    assert response.status_code == 202
    email_id = response.json()["emailId"]
    entry = await client.get(f"/emails/{email_id}", headers=auth_headers(users["admin"]))
    assert entry.json()["subject"] == "[TEST] Welcome, Ann!"


async def test_only_admins_send_test_emails(client, users, welcome_template):
    response = await client.post(
        "/templates/welcome_email/test",
        json={"recipient": "qa@x.com", "variables": {}},
        headers=auth_headers(users["alice"]),
    )
    assert response.status_code == 403


async def test_patch_cannot_rename_template(client, users, welcome_template):
    headers = auth_headers(users["admin"])
    response = await client.patch(
        "/templates/welcome_email", json={"name": "renamed", "isActive": False}, headers=headers
    )

    assert response.status_code == 200
    assert response.json()["template"]["name"] == "welcome_email"
    assert (await client.get("/templates/welcome_email", headers=headers)).status_code == 200
    assert (await client.get("/templates/renamed", headers=headers)).status_code == 404


async def test_template_with_broken_syntax(client, users):
    response = await client.post(
        "/templates/",
        json={**WELCOME, "htmlBodyTemplate": "<p>{{ userName </p>"},
        headers=auth_headers(users["admin"]),
    )

    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_TEMPLATE"


async def test_enqueue_rejects_line_break_in_subject_value(client, users, welcome_template):
    response = await enqueue(
        client, users["alice"], variables={"userName": "Alice\r\nBcc: victim@x.com", "product": "Mailflow"}
    )

    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_VARIABLE"
    assert "userName" in response.json()["message"]


async def test_enqueue_with_copies(client, users, welcome_template):
    headers = auth_headers(users["alice"])
    response = await enqueue(client, users["alice"], cc=["carol@x.com"], bcc=["audit@x.com"])
    email_id = response.json()["emailId"]

    entry = (await client.get(f"/emails/{email_id}", headers=headers)).json()
    assert entry["ccEmail"] == "carol@x.com"
    assert entry["bccEmail"] == "audit@x.com"

    invalid = await enqueue(client, users["alice"], cc=["not-an-address"])
    assert invalid.status_code == 422


async def test_users_list_their_own_emails(client, users, welcome_template):
    first = (await enqueue(client, users["alice"])).json()["emailId"]
    await enqueue(client, users["bob"], recipient="bob@x.com")

    mine = await client.get("/emails/", headers=auth_headers(users["alice"]))
    assert mine.status_code == 200
    assert [row["id"] for row in mine.json()] == [first]

    sent = await client.get("/emails/?status=Sent", headers=auth_headers(users["alice"]))
    assert sent.json() == []


async def test_only_admins_list_all_emails(client, users, welcome_template):
    await enqueue(client, users["alice"])
    await enqueue(client, users["bob"], recipient="bob@x.com")

    forbidden = await client.get("/emails/all", headers=auth_headers(users["alice"]))
    assert forbidden.status_code == 403

    everything = await client.get("/emails/all?limit=10", headers=auth_headers(users["admin"]))
    assert everything.status_code == 200
    assert {row["toEmail"] for row in everything.json()} == {"alice@x.com", "bob@x.com"}


async def test_statistics(client, users, welcome_template):
    await enqueue(client, users["alice"])
    await enqueue(client, users["bob"], recipient="bob@x.com")

    mine = await client.get("/emails/stats", headers=auth_headers(users["alice"]))
    assert mine.status_code == 200
    assert mine.json()["total"] == 1
    assert mine.json()["byStatus"]["Queued"] == 1
    assert mine.json()["successRate"] == 0.0
    assert mine.json()["averageDeliverySeconds"] is None

    assert (await client.get("/emails/stats/system", headers=auth_headers(users["bob"]))).status_code == 403
    system = await client.get("/emails/stats/system", headers=auth_headers(users["admin"]))
    assert system.json()["total"] == 2
