"""Tests for provider adapters, webhook signatures and the registry."""

import base64
import json
import time

import httpx
import pytest

from campaign_engine.core.errors import (
    ProviderApiError,
    ProviderConfigError,
    ValidationError,
)
from campaign_engine.db.enums import Channel, LinkedInActionType
from campaign_engine.services.providers import (
    EmailMessage,
    LinkedInAction,
    ProviderRegistry,
    VideoRequest,
    WebhookRequest,
)
from campaign_engine.services.providers.base import render_template
from campaign_engine.services.providers.heygen import HeyGenVideoProvider
from campaign_engine.services.providers.lemlist import LemlistEmailProvider
from campaign_engine.services.providers.phantombuster import PhantomBusterLinkedInProvider
from campaign_engine.services.providers.postmark import PostmarkEmailProvider
from campaign_engine.services.providers.signatures import (
    compute_hmac_sha256,
    timestamp_within_window,
    verify_basic_auth,
    verify_hmac_signature,
)
from campaign_engine.services.rate_limiter import AcquireResult, RateLimiter


class CountingStore:
    """Bucket store that always admits and counts acquisitions."""

    def __init__(self):
        self.calls: list[str] = []

    def try_acquire(self, service, config, cost, now):
        self.calls.append(service)
        return AcquireResult(allowed=True, tokens=config.capacity)


def _recording_transport(responses):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, body = responses.pop(0) if len(responses) > 1 else responses[0]
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler), requests


def _provider(cls, test_settings, responses, store=None):
    transport, requests = _recording_transport(list(responses))
    provider = cls(test_settings, RateLimiter(store or CountingStore()), transport=transport)
    provider.retry_base_delay = 0
    return provider, requests


# =============================================================================
# Outbound
# =============================================================================

@pytest.mark.asyncio
async def test_postmark_send_renders_and_returns_message_id(test_settings):
    provider, requests = _provider(
        PostmarkEmailProvider, test_settings, [(200, {"ErrorCode": 0, "MessageID": "pm-1"})]
    )

    result = await provider.send(
        EmailMessage(
            to_email="ada@example.com",
            subject="Hi {{first_name}}",
            html_body="<p>Hello {{ first_name }}</p>",
            variables={"first_name": "Ada"},
            metadata={"enrollment_id": "e-1", "step_number": 1},
        )
    )

    assert result.success is True
    assert result.message_id == "pm-1"
    sent = requests[0]
    assert sent.url.path == "/email"
    assert sent.headers["X-Postmark-Server-Token"] == "postmark-token"
    body = json.loads(sent.content)
    assert body["Subject"] == "Hi Ada"
    assert body["HtmlBody"] == "<p>Hello Ada</p>"
    assert body["From"] == "outreach@example.com"
    assert body["Metadata"] == {"enrollment_id": "e-1", "step_number": "1"}


@pytest.mark.asyncio
async def test_postmark_api_error_raises(test_settings):
    provider, _ = _provider(
        PostmarkEmailProvider, test_settings, [(422, {"ErrorCode": 300, "Message": "Invalid email"})]
    )

    with pytest.raises(ProviderApiError) as exc_info:
        await provider.send(EmailMessage(to_email="x@example.com", subject="s", html_body="b"))

    assert exc_info.value.http_status == 422
    assert exc_info.value.provider == "postmark"


@pytest.mark.asyncio
async def test_provider_retries_and_takes_a_token_per_attempt(test_settings):
    store = CountingStore()
    provider, requests = _provider(
        PostmarkEmailProvider,
        test_settings,
        [(503, {}), (200, {"ErrorCode": 0, "MessageID": "pm-2"})],
        store=store,
    )

    result = await provider.send(EmailMessage(to_email="x@example.com", subject="s", html_body="b"))

    assert result.message_id == "pm-2"
    assert len(requests) == 2
    assert store.calls == ["postmark", "postmark"]


@pytest.mark.asyncio
async def test_lemlist_adds_lead_to_campaign(test_settings):
    provider, requests = _provider(LemlistEmailProvider, test_settings, [(200, {"_id": "lea_1"})])

    result = await provider.send(
        EmailMessage(
            to_email="ada@example.com",
            subject="Hi",
            html_body="Body",
            variables={"first_name": "Ada"},
            metadata={"enrollment_id": "e-1", "step_number": 2},
            provider_campaign_id="cam_1",
        )
    )

    assert result.message_id == "lea_1"
    sent = requests[0]
    assert sent.url.path == "/api/campaigns/cam_1/leads/ada@example.com"
    assert sent.url.params["deduplicate"] == "true"
    expected_auth = base64.b64encode(b":lemlist-key").decode()
    assert sent.headers["Authorization"] == f"Basic {expected_auth}"
    body = json.loads(sent.content)
    assert body["first_name"] == "Ada"
    assert body["enrollmentId"] == "e-1"


@pytest.mark.asyncio
async def test_lemlist_requires_campaign_id(test_settings):
    provider, requests = _provider(LemlistEmailProvider, test_settings, [(200, {"_id": "lea_1"})])

    with pytest.raises(ValidationError):
        await provider.send(EmailMessage(to_email="ada@example.com", subject="s", html_body="b"))
    assert requests == []


@pytest.mark.asyncio
async def test_postmark_batch_reports_each_message(test_settings):
    provider, requests = _provider(
        PostmarkEmailProvider,
        test_settings,
        [
            (
                200,
                [
                    {"ErrorCode": 0, "MessageID": "pm-1"},
                    {"ErrorCode": 406, "Message": "Inactive recipient"},
                ],
            )
        ],
    )
    messages = [
        EmailMessage(to_email=f"c{i}@example.com", subject="s", html_body="b") for i in range(2)
    ]

    results = await provider.send_batch(messages)

    assert len(requests) == 1
    assert requests[0].url.path == "/email/batch"
    assert [r.success for r in results] == [True, False]
    assert results[0].message_id == "pm-1"
    assert results[1].error == "Inactive recipient"


@pytest.mark.asyncio
async def test_batch_fallback_keeps_going_after_a_failed_item(test_settings):
    provider, requests = _provider(
        LemlistEmailProvider,
        test_settings,
        [(200, {"_id": "lea_1"}), (404, {"error": "Campaign not found"})],
    )
    messages = [
        EmailMessage(to_email=f"c{i}@example.com", subject="s", html_body="b", provider_campaign_id="cam_1")
        for i in range(3)
    ]

    results = await provider.send_batch(messages)

    assert len(requests) == 3
    assert [r.success for r in results] == [True, False, False]
    assert "404" in results[1].error


@pytest.mark.asyncio
async def test_get_status_maps_vendor_states(test_settings):
    postmark, _ = _provider(PostmarkEmailProvider, test_settings, [(200, {"Status": "Sent"})])
    phantom, requests = _provider(
        PhantomBusterLinkedInProvider, test_settings, [(200, {"status": "finished"})]
    )

    assert (await postmark.get_status("pm-1")).status == "sent"
    status = await phantom.get_status("4242")

    assert status.status == "completed"
    assert requests[0].url.params["id"] == "4242"


@pytest.mark.asyncio
async def test_phantombuster_launches_agent_for_action(test_settings):
    provider, requests = _provider(
        PhantomBusterLinkedInProvider, test_settings, [(200, {"containerId": 4242})]
    )

    result = await provider.send(
        LinkedInAction(
            action_type=LinkedInActionType.CONNECTION_REQUEST,
            profile_url="https://linkedin.com/in/ada",
            metadata={"enrollment_id": "e-1", "step_number": 2},
        )
    )

    assert result.message_id == "4242"
    body = json.loads(requests[0].content)
    assert body["id"] == "agent-connect"
    assert body["argument"]["profileUrls"] == ["https://linkedin.com/in/ada"]
    assert body["argument"]["enrollmentId"] == "e-1"


@pytest.mark.asyncio
async def test_phantombuster_message_needs_text(test_settings):
    provider, _ = _provider(PhantomBusterLinkedInProvider, test_settings, [(200, {})])

    with pytest.raises(ValidationError):
        await provider.send(
            LinkedInAction(
                action_type=LinkedInActionType.MESSAGE,
                profile_url="https://linkedin.com/in/ada",
            )
        )


@pytest.mark.asyncio
async def test_heygen_generate_sets_callback(test_settings):
    provider, requests = _provider(
        HeyGenVideoProvider, test_settings, [(200, {"data": {"video_id": "vid_1"}})]
    )

    result = await provider.send(
        VideoRequest(
            script="Hi {{first_name}}",
            avatar_id="av_1",
            voice_id="vo_1",
            callback_id="e-1:3",
            variables={"first_name": "Ada"},
        )
    )

    assert result.message_id == "vid_1"
    body = json.loads(requests[0].content)
    assert body["callback_id"] == "e-1:3"
    assert body["callback_url"].endswith("/webhooks/video/heygen")
    assert body["video_inputs"][0]["voice"]["input_text"] == "Hi Ada"


def test_render_template_leaves_unknown_names_empty():
    assert render_template("Hi {{first_name}} from {{company}}", {"first_name": "Ada"}) == "Hi Ada from "
    assert render_template(None, {}) == ""


# =============================================================================
# Signatures
# =============================================================================

def test_hmac_signature_accepts_valid_and_prefixed():
    body = b'{"type":"emailsOpened"}'
    signature = compute_hmac_sha256("secret", body)

    assert verify_hmac_signature(body, signature, "secret")
    assert verify_hmac_signature(body, f"sha256={signature}", "secret")
    assert not verify_hmac_signature(body + b" ", signature, "secret")
    assert not verify_hmac_signature(body, signature, "")
    assert not verify_hmac_signature(body, None, "secret")


def test_timestamp_window_rejects_stale_and_future():
    now = 1_700_000_000
    assert timestamp_within_window(str(now - 10), now=now)
    assert timestamp_within_window(str((now - 10) * 1000), now=now)
    assert not timestamp_within_window(str(now - 301), now=now)
    assert not timestamp_within_window(str(now + 120), now=now)
    assert not timestamp_within_window("not-a-number", now=now)


def test_basic_auth_comparison():
    header = "Basic " + base64.b64encode(b"hooks:pw").decode()
    assert verify_basic_auth(header, "hooks:pw")
    assert not verify_basic_auth(header, "hooks:other")
    assert not verify_basic_auth("Bearer abc", "hooks:pw")
    assert not verify_basic_auth(header, "")


def test_lemlist_signature_with_stale_timestamp_is_rejected(test_settings, test_registry):
    provider = test_registry.get(Channel.EMAIL, "lemlist")
    body = b'{"type":"emailsOpened","_id":"act_1"}'
    signature = compute_hmac_sha256("lemlist-test-secret", body)

    fresh = WebhookRequest(
        body=body,
        headers={"X-Lemlist-Signature": signature, "X-Timestamp": str(int(time.time()))},
    )
    stale = WebhookRequest(
        body=body,
        headers={"X-Lemlist-Signature": signature, "X-Timestamp": str(int(time.time()) - 3600)},
    )

    assert provider.verify_webhook_signature(fresh, provider.webhook_secret)
    assert not provider.verify_webhook_signature(stale, provider.webhook_secret)


def test_heygen_signature_covers_timestamp_and_body(test_registry):
    provider = test_registry.get(Channel.VIDEO, "heygen")
    body = b'{"event_type":"avatar_video.success"}'
    timestamp = str(int(time.time()))
    signature = compute_hmac_sha256("heygen-test-secret", f"{timestamp}.".encode() + body)

    good = WebhookRequest(body=body, headers={"X-HeyGen-Signature": f"{timestamp},{signature}"})
    tampered = WebhookRequest(body=body + b" ", headers={"X-HeyGen-Signature": f"{timestamp},{signature}"})

    assert provider.verify_webhook_signature(good, provider.webhook_secret)
    assert not provider.verify_webhook_signature(tampered, provider.webhook_secret)
    assert not provider.verify_webhook_signature(good, "")


def test_phantombuster_accepts_shared_token(test_registry):
    provider = test_registry.get(Channel.LINKEDIN, "phantombuster")

    good = WebhookRequest(body=b"{}", headers={"X-Phantombuster-Token": "phantom-test-secret"})
    bad = WebhookRequest(body=b"{}", headers={"X-Phantombuster-Token": "nope"})

    assert provider.verify_webhook_signature(good, provider.webhook_secret)
    assert not provider.verify_webhook_signature(bad, provider.webhook_secret)


# =============================================================================
# Webhook parsing
# =============================================================================

def test_postmark_parse_bounce_and_ignored_reactivation(test_registry):
    provider = test_registry.get(Channel.EMAIL, "postmark")

    raw = provider.parse_webhook_event(
        {
            "RecordType": "Bounce",
            "ID": 692560173,
            "MessageID": "pm-1",
            "Type": "HardBounce",
            "BouncedAt": "2026-10-01T10:00:00Z",
            "Metadata": {"enrollment_id": "e-1", "step_number": "2"},
        }
    )
    assert raw.type == "Bounce"
    assert raw.provider_event_id == "bounce:692560173"
    assert raw.enrollment_id == "e-1"
    assert raw.step_number == 2
    assert raw.metadata["bounce_type"] == "HardBounce"

    assert provider.parse_webhook_event(
        {"RecordType": "SubscriptionChange", "MessageID": "pm-1", "SuppressSending": False}
    ) is None

    with pytest.raises(ValidationError):
        provider.parse_webhook_event({"MessageID": "pm-1"})


def test_lemlist_parse_converts_zero_based_step(test_registry):
    provider = test_registry.get(Channel.EMAIL, "lemlist")

    raw = provider.parse_webhook_event(
        {"type": "emailsClicked", "_id": "act_9", "leadId": "lea_1", "sequenceStep": 0}
    )

    assert raw.provider_event_id == "act_9"
    assert raw.provider_message_id == "lea_1"
    assert raw.step_number == 1


def test_phantombuster_parse_finished_and_failed(test_registry):
    provider = test_registry.get(Channel.LINKEDIN, "phantombuster")

    raw = provider.parse_webhook_event(
        {
            "containerId": 4242,
            "status": "finished",
            "argument": {"action": "message", "enrollmentId": "e-1", "stepNumber": 4},
        }
    )
    assert raw.type == "message.finished"
    assert raw.provider_event_id == "4242:message.finished"
    assert raw.step_number == 4
    assert "argument" not in raw.payload

    assert provider.parse_webhook_event(
        {"containerId": 4243, "status": "error", "argument": {"action": "message"}}
    ) is None


def test_heygen_parse_reads_callback_id(test_registry):
    provider = test_registry.get(Channel.VIDEO, "heygen")

    raw = provider.parse_webhook_event(
        {
            "event_type": "avatar_video.success",
            "event_data": {"video_id": "vid_1", "callback_id": "e-1:3", "url": "https://cdn/v.mp4"},
        }
    )

    assert raw.enrollment_id == "e-1"
    assert raw.step_number == 3
    assert raw.provider_event_id == "avatar_video.success:vid_1"
    assert raw.metadata["video_url"] == "https://cdn/v.mp4"


# =============================================================================
# Registry
# =============================================================================

def test_registry_uses_selector_and_caches(test_registry):
    email = test_registry.email()

    assert email.name == "lemlist"
    assert test_registry.get("email") is email
    assert test_registry.get(Channel.EMAIL, "postmark").name == "postmark"


def test_registry_rejects_unknown_provider(test_registry):
    with pytest.raises(ValidationError):
        test_registry.get(Channel.VIDEO, "synthesia")
    with pytest.raises(ValidationError):
        test_registry.get("fax")


def test_registry_fails_fast_on_missing_settings(test_settings, test_rate_limiter):
    config = test_settings.model_copy(update={"HEYGEN_API_KEY": ""})
    registry = ProviderRegistry(config, test_rate_limiter)

    with pytest.raises(ProviderConfigError) as exc_info:
        registry.video()

    assert exc_info.value.missing == ["HEYGEN_API_KEY"]
    assert registry.validate_all() == {"video": ["HEYGEN_API_KEY"]}


def test_registry_describe_hides_credentials(test_registry):
    summary = test_registry.describe()

    assert summary["email"]["selected"] == "lemlist"
    assert summary["email"]["configured"] is True
    assert summary["video"]["name"] == "heygen"
    assert "lemlist-key" not in json.dumps(summary)
