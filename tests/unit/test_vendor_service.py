import httpx
import pytest

from mini_crm.services import vendor_service
from mini_crm.services.vendor_service import VendorAPIError, submit_message


def submit(**overrides):
    values = {
        "vendor_message_id": "CMP-1-10",
        "channel": "email",
        "recipient": "customer@example.com",
        "subject": "Hello",
        "body": "Autumn sale",
    }
    values.update(overrides)
    return submit_message(**values)


@pytest.fixture
def live_vendor(monkeypatch):
    monkeypatch.setattr(vendor_service.settings, "vendor_mock_mode", False)
    monkeypatch.setattr(vendor_service.settings, "vendor_base_url", "https://vendor.test")
    monkeypatch.setattr(vendor_service.settings, "vendor_api_key", "secret")
    monkeypatch.setattr(vendor_service.time, "sleep", lambda _: None)


class TestMockMode:
    def test_accepts_message_with_recipient(self):
        submission = submit()

        assert submission.accepted
        assert submission.code == "0000"
        assert submission.vendor_message_id == "CMP-1-10"
        assert submission.submitted_at.tzinfo is not None

    def test_missing_recipient_is_rejected_without_raising(self):
        submission = submit(recipient=None)

        assert not submission.accepted
        assert submission.code == "1001"
        assert submission.message == "수신자 주소 오류"

    def test_unknown_channel_is_rejected(self):
        assert submit(channel="fax").code == "1004"

    def test_status_lookup(self):
        assert vendor_service.get_message_status("CMP-1-10")["messageId"] == "CMP-1-10"


class TestLiveMode:
    def test_retryable_error_is_retried(self, live_vendor, monkeypatch):
        calls = []

        def _post(endpoint, payload):
            calls.append(endpoint)
            if len(calls) < 3:
                raise VendorAPIError("busy", retryable=True)
            return {"resultCode": "0000", "messageId": payload["messageId"]}

        monkeypatch.setattr(vendor_service, "_post", _post)

        assert submit().accepted
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self, live_vendor, monkeypatch):
        calls = []

        def _post(endpoint, payload):
            calls.append(endpoint)
            return {"resultCode": "5030", "messageId": payload["messageId"]}

        monkeypatch.setattr(vendor_service, "_post", _post)

        with pytest.raises(VendorAPIError) as exc_info:
            submit()

        assert exc_info.value.code == "5030"
        assert len(calls) == vendor_service.MAX_RETRY_ATTEMPTS

    def test_business_rejection_is_not_retried(self, live_vendor, monkeypatch):
        calls = []

        def _post(endpoint, payload):
            calls.append(endpoint)
            return {"resultCode": "1002", "messageId": payload["messageId"]}

        monkeypatch.setattr(vendor_service, "_post", _post)

        submission = submit()

        assert not submission.accepted
        assert submission.message == "수신 거부된 수신자"
        assert len(calls) == 1

    def test_missing_api_key(self, live_vendor, monkeypatch):
        monkeypatch.setattr(vendor_service.settings, "vendor_api_key", None)

        with pytest.raises(VendorAPIError):
            vendor_service._headers()


class TestDecode:
    def test_server_error_is_retryable(self):
        with pytest.raises(VendorAPIError) as exc_info:
            vendor_service._decode(httpx.Response(503))

        assert exc_info.value.retryable

    def test_client_error_with_result_code_is_returned(self):
        data = vendor_service._decode(httpx.Response(400, json={"resultCode": "1003"}))

        assert data["resultCode"] == "1003"

    def test_non_json_body(self):
        with pytest.raises(VendorAPIError):
            vendor_service._decode(httpx.Response(200, text="<html>"))
