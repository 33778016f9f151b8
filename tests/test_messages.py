from waha_relay.messages import MessageProcessor, build_system_prompt, truncate_reply
from tests.conftest import FakeGateway


class FakeResponder:
    def __init__(self, reply="Hello there"):
        self.reply = reply
        self.calls = []

    def generate(self, user_text, system_prompt=None, history=None):
        self.calls.append((user_text, system_prompt, list(history or [])))
        return self.reply


def make_processor(db, gw, responder=None, api_key="key"):
    responder = responder or FakeResponder()
    return MessageProcessor(db, gw, "default", env_api_key=api_key, responder_factory=lambda k, m: responder), responder


def event(body="hi", **payload):
    msg = {"id": payload.pop("id", "msg-1"), "from": "15550001@c.us", "fromMe": False, "body": body, "type": "chat"}
    msg.update(payload)
    return {"event": "message", "session": "default", "payload": msg}


async def test_replies_and_stores_conversation(db):
    gw = FakeGateway()
    processor, responder = make_processor(db, gw)
    db.save_message("15550001@c.us", "user", "earlier")

    res = await processor.process(event("what is the price?"))
    assert res["status"] == "replied"
    sent = [c for c in gw.calls if c[0] == "send_text"]
    assert sent == [("send_text", "15550001@c.us", "Hello there", "default")]
    assert gw.count("start_typing") == 1 and gw.count("stop_typing") == 1
    history = responder.calls[0][2]
    assert [h["content"] for h in history] == ["earlier"]
    assert [m["sender"] for m in db.get_conversation("15550001@c.us")] == ["user", "user", "ai"]
    assert db.get_status()["messages_processed"] == 1


async def test_skip_rules(db):
    gw = FakeGateway()
    processor, _ = make_processor(db, gw)
    assert (await processor.process(event(fromMe=True)))["reason"] == "from_me"
    assert (await processor.process(event(type="image", id="m2")))["reason"] == "unsupported_type"
    assert (await processor.process(event("   ", id="m3")))["reason"] == "empty"
    await processor.process(event(id="m4"))
    assert (await processor.process(event(id="m4")))["reason"] == "duplicate"
    assert gw.count("send_text") == 1


async def test_requires_ai_key(db):
    gw = FakeGateway()
    processor = MessageProcessor(db, gw, "default", env_api_key=None, responder_factory=lambda k, m: FakeResponder())
    assert not processor.ai_configured()
    assert (await processor.process(event()))["reason"] == "ai_not_configured"
    db.save_config({"gemini_api_key": "abc"})
    assert processor.ai_configured()


async def test_long_reply_is_truncated(db):
    gw = FakeGateway()
    processor, _ = make_processor(db, gw, FakeResponder("x" * 5000))
    await processor.process(event())
    text = [c for c in gw.calls if c[0] == "send_text"][0][2]
    assert len(text) == 3900 + len("... (message truncated)")


def test_truncate_and_prompt_helpers():
    assert truncate_reply("short") == "short"
    prompt = build_system_prompt({"system_prompt": "Sell tea.", "products": [{"name": "Green", "price": "3 USD"}]})
    assert prompt.startswith("Sell tea.")
    assert "- Green - 3 USD" in prompt


def test_chat_id_helpers():
    from waha_relay.utils import describe_user, normalize_whatsapp_id, to_chat_id

    assert normalize_whatsapp_id("94770889232@c.us") == "+94770889232"
    assert to_chat_id("+94 770-889232") == "94770889232@c.us"
    assert to_chat_id("12036302@g.us") == "12036302@g.us"
    assert describe_user({"me": {"id": "1@c.us"}}) == "1@c.us"
    assert describe_user({}) is None
