# tests/unit/test_provider_adapters.py

from agentflow.services.provider_adapters import UNSUPPORTED_TEXT, normalize_karix_webhook, normalize_meta_webhook


def meta_body(messages=None, statuses=None):
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550001111", "phone_number_id": "123"},
        "contacts": [{"profile": {"name": "Jane"}, "wa_id": "919876543210"}],
    }
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {"object": "whatsapp_business_account", "entry": [{"id": "1", "changes": [{"field": "messages", "value": value}]}]}


def meta_message(kind, **content):
    return {"from": "919876543210", "id": "wamid.in", "timestamp": "1700000000", "type": kind, **content}


class TestMetaWebhook:

    def test_text_message(self):
        [message] = normalize_meta_webhook(meta_body([meta_message("text", text={"body": "hello"})]))["messages"]

        assert message.text == "hello"
        assert message.postback is None
        assert message.sender.phone == "919876543210"
        assert message.sender.name == "Jane"
        assert message.receiver.phone == "15550001111"
        assert message.service == "meta"
        assert message.webhook_context["phone_number_id"] == "123"

    def test_button_reply(self):
        interactive = {"type": "button_reply", "button_reply": {"id": "step2/yes", "title": "Yes"}}
        [message] = normalize_meta_webhook(meta_body([meta_message("interactive", interactive=interactive)]))["messages"]

        assert (message.text, message.postback) == ("Yes", "step2/yes")

    def test_list_reply(self):
        interactive = {"type": "list_reply", "list_reply": {"id": "step3/pixel", "title": "Pixel"}}
        [message] = normalize_meta_webhook(meta_body([meta_message("interactive", interactive=interactive)]))["messages"]

        assert (message.text, message.postback) == ("Pixel", "step3/pixel")

    def test_template_button(self):
        button = {"text": "Support", "payload": "support"}
        [message] = normalize_meta_webhook(meta_body([meta_message("button", button=button)]))["messages"]

        assert (message.text, message.postback) == ("Support", "support")

    def test_image_keeps_attachment(self):
        image = {"id": "media-1", "mime_type": "image/jpeg", "caption": "my receipt"}
        [message] = normalize_meta_webhook(meta_body([meta_message("image", image=image)]))["messages"]

        assert message.text == "my receipt"
        assert message.attachments == [image]

    def test_unsupported_type(self):
        [message] = normalize_meta_webhook(meta_body([meta_message("video", video={})]))["messages"]
        assert message.text == UNSUPPORTED_TEXT

    def test_statuses(self):
        statuses = [{"id": "wamid.out", "status": "read", "recipient_id": "919876543210", "timestamp": "1700000001"}]
        result = normalize_meta_webhook(meta_body(statuses=statuses))

        assert result["messages"] == []
        [status] = result["statuses"]
        assert (status.service, status.message_id, status.status) == ("meta", "wamid.out", "read")
        assert status.recipient == "919876543210"

    def test_malformed_body(self):
        assert normalize_meta_webhook({"entry": []}) == {"messages": [], "statuses": []}
        assert normalize_meta_webhook({}) == {"messages": [], "statuses": []}


def karix_body(message):
    return {
        "channel": "WABA",
        "events": {"eventType": "User initiated", "mid": "karix-in-1", "timestamp": "1700000000"},
        "eventContent": {"message": {"from": "919876543210", "to": "15550002222", **message}},
    }


class TestKarixWebhook:

    def test_text(self):
        [message] = normalize_karix_webhook(karix_body({"contentType": "text", "text": {"body": "help please"}}), "biz-1")["messages"]

        assert message.text == "help please"
        assert message.sender.phone == "919876543210"
        assert message.receiver.phone == "15550002222"
        assert message.message_id == "karix-in-1"
        assert message.webhook_context == {"provider": "karix", "business_id": "biz-1"}

    def test_interactive(self):
        body = karix_body({"contentType": "interactive", "interactive": {"button_reply": {"id": "1", "title": "No"}}})
        [message] = normalize_karix_webhook(body)["messages"]

        assert (message.text, message.postback) == ("No", "1")

    def test_attachment(self):
        body = karix_body({
            "contentType": "ATTACHMENT",
            "attachmentType": "image",
            "attachmentUrl": "https://cdn.test/1.jpg",
            "attachmentMimeType": "image/jpeg",
        })
        [message] = normalize_karix_webhook(body)["messages"]

        assert message.text == "image"
        assert message.attachments[0]["url"] == "https://cdn.test/1.jpg"

    def test_delivery_event(self):
        body = {
            "events": {"eventType": "DELIVERY EVENTS", "mid": "karix-out-1", "timestamp": "1700000002"},
            "notificationAttributes": {"status": "failed", "code": "131047", "reason": "Re-engagement message"},
            "recipient": {"to": "919876543210"},
        }
        [status] = normalize_karix_webhook(body)["statuses"]

        assert (status.message_id, status.status, status.recipient) == ("karix-out-1", "failed", "919876543210")
        assert status.errors == [{"code": "131047", "reason": "Re-engagement message"}]

    def test_unknown_event_is_ignored(self):
        assert normalize_karix_webhook({"events": {"eventType": "Opt-out"}}) == {"messages": [], "statuses": []}
