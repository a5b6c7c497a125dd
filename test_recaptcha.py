from unittest.mock import MagicMock, patch

import pytest
import requests
from recaptcha import RecaptchaVerifier


def _google_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code}")
    return response


@pytest.fixture
def verifier():
    return RecaptchaVerifier(secret_key="test-secret", min_score=0.5, timeout=1)


def test_unconfigured_fails_open():
    result = RecaptchaVerifier(secret_key=None).verify("any-token")
    assert result.success
    assert result.score == 0.5
    assert result.fail_open


def test_missing_token_fails(verifier):
    result = verifier.verify(None)
    assert not result.success
    assert not result.fail_open


def test_human_score_passes(verifier):
    with patch("recaptcha.requests.post", return_value=_google_response(
        {"success": True, "score": 0.8, "action": "contact"}
    )) as post:
        result = verifier.verify("token", remote_ip="1.2.3.4")

    assert result.success
    assert result.score == 0.8
    assert not result.fail_open
    params = post.call_args.kwargs["params"]
    assert params == {"secret": "test-secret", "response": "token", "remoteip": "1.2.3.4"}


def test_score_at_threshold_passes(verifier):
    with patch("recaptcha.requests.post", return_value=_google_response({"success": True, "score": 0.5})):
        assert verifier.verify("token").success


def test_low_score_fails(verifier):
    with patch("recaptcha.requests.post", return_value=_google_response({"success": True, "score": 0.2})):
        result = verifier.verify("token")
    assert not result.success
    assert result.score == 0.2


def test_unsuccessful_verification_fails(verifier):
    with patch("recaptcha.requests.post", return_value=_google_response(
        {"success": False, "error-codes": ["invalid-input-response"]}
    )):
        result = verifier.verify("token")
    assert not result.success
    assert result.score == 0


@pytest.mark.parametrize("error", [
    requests.exceptions.ConnectionError("connection refused"),
    requests.exceptions.Timeout("timed out"),
])
def test_network_errors_fail_open(verifier, error):
    with patch("recaptcha.requests.post", side_effect=error):
        result = verifier.verify("token")
    assert result.success
    assert result.score == 0.5
    assert result.fail_open


def test_server_error_fails_open(verifier):
    with patch("recaptcha.requests.post", return_value=_google_response({}, status_code=503)):
        result = verifier.verify("token")
    assert result.success
    assert result.fail_open


@pytest.mark.parametrize("payload", [None, ["success", True]])
def test_non_object_body_fails_open(verifier, payload):
    with patch("recaptcha.requests.post", return_value=_google_response(payload)):
        result = verifier.verify("token")
    assert result.success
    assert result.score == 0.5
    assert result.fail_open


def test_non_numeric_score_fails_open(verifier):
    with patch("recaptcha.requests.post", return_value=_google_response({"success": True, "score": "n/a"})):
        result = verifier.verify("token")
    assert result.success
    assert result.score == 0.5
    assert result.fail_open
