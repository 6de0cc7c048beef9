from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from helpdesk.apps.api.main import create_app
from helpdesk.tests.utils.factories import create_mailbox


@pytest.mark.asyncio
async def test_workflow_lifecycle(session, llm) -> None:
    llm.queue('"Refunds"')
    mailbox = await create_mailbox(session)
    base = f"/mailboxes/{mailbox.slug}/workflows"

    async with AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test") as client:
        created = await client.put(
            base,
            json={"prompt": "Customer asks for a refund", "action": "reply_and_close_ticket", "message": "Done!"},
        )
        assert created.status_code == 200
        assert created.json()["name"] == "Refunds"
        refund_id = created.json()["id"]

        spam = await client.put(base, json={"name": "Spam", "prompt": "Obvious spam", "action": "mark_spam"})
        spam_id = spam.json()["id"]

        listed = (await client.get(base)).json()
        assert [(item["id"], item["action"]) for item in listed] == [
            (refund_id, "reply_and_close_ticket"),
            (spam_id, "mark_spam"),
        ]
        assert listed[0]["message"] == "Done!"

        reordered = await client.post(f"{base}/reorder", json={"positions": [spam_id, refund_id]})
        assert reordered.status_code == 204
        assert [item["id"] for item in (await client.get(base)).json()] == [spam_id, refund_id]

        assert (await client.delete(f"{base}/{spam_id}")).status_code == 204
        assert (await client.delete(f"{base}/{spam_id}")).status_code == 404
        assert [item["id"] for item in (await client.get(base)).json()] == [refund_id]


@pytest.mark.asyncio
async def test_invalid_workflow_definitions_are_rejected(session, llm) -> None:
    mailbox = await create_mailbox(session)
    base = f"/mailboxes/{mailbox.slug}/workflows"

    async with AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test") as client:
        no_message = await client.put(base, json={"name": "X", "prompt": "x", "action": "reply_and_set_open"})
        no_endpoint = await client.put(
            base,
            json={"name": "X", "prompt": "x", "action": "reply_and_close_ticket", "auto_reply_from_metadata": True},
        )
        unknown_action = await client.put(base, json={"name": "X", "prompt": "x", "action": "explode"})
        unknown_mailbox = await client.get("/mailboxes/nope/workflows")

    assert no_message.status_code == 400
    assert no_message.json()["detail"]["message"] == "The message field cannot be empty for this action"
    assert no_endpoint.status_code == 400
    assert no_endpoint.json()["detail"]["message"] == "Mailbox does not have metadata endpoint"
    assert unknown_action.status_code == 422
    assert unknown_mailbox.status_code == 404
    assert llm.calls == []
