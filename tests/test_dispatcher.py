import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backends import BackendConfig, BackendError, BackendKind, ChatMessage, ConnectionStatus, ErrorKind
from config_store import BackendSettings
from dispatcher import CONNECTION_LOST, Dispatcher, DispatcherListener
from message_log import MessageStore

OLLAMA = "http://localhost:11434"
CLAW = "http://localhost:3000"
CUSTOM = "https://bot.example/chat"


class Recorder(DispatcherListener):
    def __init__(self):
        self.statuses = []
        self.messages = []
        self.errors = []

    def status_changed(self, status, error):
        self.statuses.append(status)

    def message_appended(self, message):
        self.messages.append(message)

    def error_raised(self, error):
        self.errors.append(error)


def save_settings(config_store, kind, auto_connect=True, **configs):
    settings = BackendSettings(selected_backend=kind, auto_connect=auto_connect)
    for k, cfg in configs.items():
        settings.configs[BackendKind(k)] = cfg
    config_store.save(settings)


def ollama_ready(config_store, http):
    save_settings(config_store, BackendKind.OLLAMA, ollama=BackendConfig(url=OLLAMA, model="llama3.2"))
    http.route("GET", f"{OLLAMA}/api/tags", 200, {"models": []})


def custom_ready(config_store, http):
    save_settings(config_store, BackendKind.CUSTOM, custom=BackendConfig(url=CUSTOM))
    http.route("GET", CUSTOM, 200, "ok")
    http.route("POST", CUSTOM, 200, {"response": "ok"})


def make(config_store, http, storage=None, **kwargs):
    rec = Recorder()
    d = Dispatcher(
        config_store,
        http=http,
        message_store=MessageStore(storage) if storage is not None else None,
        listener=rec,
        **kwargs,
    )
    return d, rec


@pytest.mark.parametrize("kind", [k for k in BackendKind if k is not BackendKind.NONE])
def test_connect_before_configuring_fails(config_store, http, kind):
    async def scenario():
        d, _ = make(config_store, http)
        await d.select_backend(kind)
        return d, await d.connect()

    d, status = asyncio.run(scenario())
    assert status is ConnectionStatus.ERROR
    assert "not configured" in d.last_error
    assert http.calls == []


def test_connect_with_none_stays_disconnected(config_store, http):
    async def scenario():
        d, rec = make(config_store, http)
        return d, rec, await d.connect()

    d, rec, status = asyncio.run(scenario())
    assert status is ConnectionStatus.DISCONNECTED
    assert rec.statuses == []
    assert http.calls == []


def test_ollama_connect_and_send(config_store, http):
    ollama_ready(config_store, http)
    http.route("POST", f"{OLLAMA}/api/generate", 200, {"response": "hi there", "done": True})

    async def scenario():
        d, rec = make(config_store, http)
        await d.connect()
        statuses = list(rec.statuses)
        reply = await d.send_message("hello")
        d.disconnect()
        return d, rec, statuses, reply

    d, rec, statuses, reply = asyncio.run(scenario())
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    assert reply == "hi there"
    assert [(m.content, m.from_user) for m in d.messages] == [("hello", True), ("hi there", False)]
    assert d.messages[0].timestamp <= d.messages[1].timestamp
    assert [m.content for m in rec.messages] == ["hello", "hi there"]
    assert "User: hello" in http.chat_calls()[0]["json"]["prompt"]


def test_failed_send_keeps_user_message_and_connection(config_store, http):
    ollama_ready(config_store, http)
    http.route("POST", f"{OLLAMA}/api/generate", 500, "internal error")

    async def scenario():
        d, rec = make(config_store, http)
        await d.connect()
        with pytest.raises(BackendError) as exc:
            await d.send_message("x")
        d_status = d.status
        d.disconnect()
        return d, rec, exc.value, d_status

    d, rec, error, status = asyncio.run(scenario())
    assert error.kind is ErrorKind.REQUEST_FAILED
    assert [(m.content, m.from_user) for m in d.messages] == [("x", True)]
    assert status is ConnectionStatus.CONNECTED
    assert rec.errors == [error]
    assert d.last_error == str(error)


def test_transport_failure_on_send(config_store, http):
    ollama_ready(config_store, http)

    async def scenario():
        d, _ = make(config_store, http)
        await d.connect()
        with pytest.raises(BackendError) as exc:
            await d.send_message("anyone there?")
        d.disconnect()
        return exc.value

    assert asyncio.run(scenario()).kind is ErrorKind.TRANSPORT_ERROR


def test_send_requires_connection(config_store, http):
    ollama_ready(config_store, http)

    async def scenario():
        d, rec = make(config_store, http)
        with pytest.raises(BackendError) as exc:
            await d.send_message("hello?")
        return d, rec, exc.value

    d, rec, error = asyncio.run(scenario())
    assert error.kind is ErrorKind.NOT_CONNECTED
    assert d.messages == []
    assert rec.errors == [error]


def test_context_window_sends_last_ten_prior_messages(config_store, http, storage):
    save_settings(config_store, BackendKind.OPENCLAW, openclaw=BackendConfig(url=CLAW, token="t", model="default"))
    http.route("GET", f"{CLAW}/health", 200)
    http.route("POST", f"{CLAW}/v1/chat/completions", 200,
               {"choices": [{"message": {"role": "assistant", "content": "pinch"}}]})
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    prior = [ChatMessage(content=f"m{i}", from_user=(i % 2 == 0), timestamp=start + timedelta(seconds=i))
             for i in range(15)]
    MessageStore(storage).save(prior)

    async def scenario():
        d, _ = make(config_store, http, storage=storage)
        await d.connect()
        await d.send_message("next")
        d.disconnect()
        return d

    d = asyncio.run(scenario())
    sent = http.chat_calls()[0]["json"]["messages"]
    assert sent[0]["role"] == "system"
    assert [m["content"] for m in sent[1:-1]] == [f"m{i}" for i in range(5, 15)]
    assert sent[-1] == {"role": "user", "content": "next"}
    assert len(d.messages) == 17
    assert [m.content for m in MessageStore(storage).load()][-2:] == ["next", "pinch"]


def test_disconnect_is_idempotent(config_store, http):
    ollama_ready(config_store, http)

    async def scenario():
        d, rec = make(config_store, http)
        await d.connect()
        d.disconnect()
        first = (d.status, d._health_task, len(rec.statuses))
        d.disconnect()
        second = (d.status, d._health_task, len(rec.statuses))
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert first[0] is ConnectionStatus.DISCONNECTED
    assert first[1] is None


def test_periodic_health_check_detects_lost_connection(config_store, http):
    ollama_ready(config_store, http)

    async def scenario():
        d, rec = make(config_store, http, health_interval=0.01)
        await d.connect()
        await asyncio.sleep(0.05)
        assert d.status is ConnectionStatus.CONNECTED
        http.route("GET", f"{OLLAMA}/api/tags", 500)
        for _ in range(100):
            if d.status is ConnectionStatus.ERROR:
                break
            await asyncio.sleep(0.01)
        probes = len(http.calls)
        await asyncio.sleep(0.05)
        return d, rec, probes

    d, rec, probes = asyncio.run(scenario())
    assert d.status is ConnectionStatus.ERROR
    assert d.last_error == CONNECTION_LOST
    assert rec.statuses[-1] is ConnectionStatus.ERROR
    # no automatic reconnect once the check has failed
    assert len(http.calls) == probes
    assert d._health_task is None


def test_select_backend_disconnects_and_persists(config_store, http):
    ollama_ready(config_store, http)

    async def scenario():
        d, rec = make(config_store, http)
        await d.connect()
        await d.select_backend(BackendKind.OPENAI)
        after_switch = d.status
        d.update_config(BackendKind.OPENAI, token="sk-live")
        status = await d.select_backend(BackendKind.OPENAI, auto_connect=True)
        return d, after_switch, status

    d, after_switch, status = asyncio.run(scenario())
    assert after_switch is ConnectionStatus.DISCONNECTED
    assert status is ConnectionStatus.CONNECTED
    stored = config_store.load().settings
    assert stored.selected_backend is BackendKind.OPENAI
    assert stored.config_for(BackendKind.OPENAI).token == "sk-live"
    assert stored.config_for(BackendKind.OLLAMA).url == OLLAMA


def test_update_config_of_active_backend_disconnects(config_store, http):
    ollama_ready(config_store, http)

    async def scenario():
        d, _ = make(config_store, http)
        await d.connect()
        d.update_config(BackendKind.OLLAMA, model="mistral")
        return d

    d = asyncio.run(scenario())
    assert d.status is ConnectionStatus.DISCONNECTED
    assert d.config.model == "mistral"
    with pytest.raises(ValueError):
        d.update_config(BackendKind.NONE, url="http://x")


def test_invalid_url_fails_connect(config_store, http):
    save_settings(config_store, BackendKind.OLLAMA, ollama=BackendConfig(url="localhost:11434", model="llama3.2"))

    async def scenario():
        d, _ = make(config_store, http)
        await d.connect()
        return d

    d = asyncio.run(scenario())
    assert d.status is ConnectionStatus.ERROR
    assert d.last_error.startswith("Invalid API URL")


def test_only_one_connect_in_flight(config_store, http):
    custom_ready(config_store, http)

    async def scenario():
        d, rec = make(config_store, http)
        results = await asyncio.gather(d.connect(), d.connect())
        d.disconnect()
        return rec, results

    rec, results = asyncio.run(scenario())
    assert results == [ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTED]
    assert len([c for c in http.calls if c["method"] == "GET"]) == 1
    assert rec.statuses.count(ConnectionStatus.CONNECTING) == 1


def test_concurrent_sends_are_serialized(config_store, http):
    custom_ready(config_store, http)

    async def scenario():
        d, _ = make(config_store, http)
        await d.connect()
        replies = await asyncio.gather(d.send_message("one"), d.send_message("two"))
        d.disconnect()
        return d, replies

    d, replies = asyncio.run(scenario())
    assert replies == ["ok", "ok"]
    assert [(m.content, m.from_user) for m in d.messages] == [
        ("one", True), ("ok", False), ("two", True), ("ok", False),
    ]


def test_disconnect_cancels_in_flight_send(config_store, http):
    custom_ready(config_store, http)

    async def scenario():
        d, rec = make(config_store, http)
        await d.connect()
        http.entered.clear()
        http.block()
        send = asyncio.ensure_future(d.send_message("are you there?"))
        for _ in range(200):
            if http.entered.is_set():
                break
            await asyncio.sleep(0.01)
        d.disconnect()
        try:
            with pytest.raises(BackendError) as exc:
                await send
        finally:
            http.release()
        await asyncio.sleep(0.05)
        return d, rec, exc.value

    d, rec, error = asyncio.run(scenario())
    assert error.kind is ErrorKind.NOT_CONNECTED
    assert [(m.content, m.from_user) for m in d.messages] == [("are you there?", True)]
    assert d.status is ConnectionStatus.DISCONNECTED
    assert rec.statuses[-1] is ConnectionStatus.DISCONNECTED
    # a cancelled send leaves no error behind
    assert rec.errors == []
    assert d.last_error is None


def test_start_auto_connects_saved_backend(config_store, http):
    ollama_ready(config_store, http)

    async def scenario():
        d, _ = make(config_store, http)
        return await d.start()

    assert asyncio.run(scenario()) is ConnectionStatus.CONNECTED


def test_start_respects_auto_connect_off(config_store, http):
    save_settings(config_store, BackendKind.OLLAMA, auto_connect=False,
                  ollama=BackendConfig(url=OLLAMA, model="llama3.2"))

    async def scenario():
        d, _ = make(config_store, http)
        return await d.start()

    assert asyncio.run(scenario()) is ConnectionStatus.DISCONNECTED
    assert http.calls == []


def test_corrupt_settings_are_reported(storage, config_store, http):
    storage.save("ai_backend_config", b"\x00garbage")
    d, _ = make(config_store, http)
    assert d.settings_corrupted
    assert d.kind is BackendKind.NONE


def test_switching_backend_cancels_connect_in_flight(config_store, http):
    custom_ready(config_store, http)

    async def scenario():
        d, rec = make(config_store, http)
        http.block()
        connecting = asyncio.ensure_future(d.connect())
        for _ in range(200):
            if http.entered.is_set():
                break
            await asyncio.sleep(0.01)
        await d.select_backend(BackendKind.OLLAMA)
        http.release()
        status = await connecting
        await asyncio.sleep(0.05)
        return d, rec, status

    d, rec, status = asyncio.run(scenario())
    assert status is ConnectionStatus.DISCONNECTED
    assert d.status is ConnectionStatus.DISCONNECTED
    assert d._health_task is None
    assert rec.statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED]
    assert d.kind is BackendKind.OLLAMA
