"""
Unit Tests — Pipeline Chainer, Notifier and retry policy
========================================================
All HTTP traffic is mocked at httpx.AsyncClient.post; asyncio.sleep is
patched so retry backoff does not slow the suite down.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from conductor.agents.notifier import Notifier
from conductor.agents.pipeline_chainer import HttpDownstream, LocalDownstream, PipelineChainer
from conductor.core.exceptions import ConfigurationError, TransientInfraError
from conductor.models.events import DownstreamTriggerParams, NotificationEvent
from conductor.utils.retry import is_transient, with_retries


def _response(status_code, json_body=None, url="https://cd.example/trigger"):
    return httpx.Response(status_code, json=json_body or {}, request=httpx.Request("POST", url))


# ---------------------------------------------------------------------------
# 1. Pipeline Chainer
# ---------------------------------------------------------------------------
class TestPipelineChainer:

    def test_local_target_receives_typed_params(self):
        submit = AsyncMock(return_value=7)
        chainer = PipelineChainer({"cd": LocalDownstream(submit)})

        run_id = asyncio.run(chainer.trigger("cd", {"image_tag": "42", "source_run_id": 42}))

        assert run_id == 7
        params = submit.call_args.args[0]
        assert params == DownstreamTriggerParams(image_tag="42", source_run_id=42)

    @pytest.mark.parametrize("params", [
        {"image_tag": "", "source_run_id": 42},
        {"image_tag": "bad tag!", "source_run_id": 42},
        {"image_tag": "42", "source_run_id": 0},
        {"image_tag": "42"},
    ])
    def test_invalid_params_rejected_before_send(self, params):
        submit = AsyncMock(return_value=7)
        chainer = PipelineChainer({"cd": LocalDownstream(submit)})
        with pytest.raises(ConfigurationError):
            asyncio.run(chainer.trigger("cd", params))
        submit.assert_not_called()

    def test_unknown_pipeline(self):
        with pytest.raises(ConfigurationError):
            asyncio.run(PipelineChainer().trigger("cd", DownstreamTriggerParams(image_tag="1", source_run_id=1)))

    def test_http_target_wire_format(self):
        async def run_test():
            with patch("httpx.AsyncClient.post", return_value=_response(200, {"runId": 3})) as mock_post:
                target = HttpDownstream("https://cd.example/trigger", token="secret")
                run_id = await PipelineChainer({"cd": target}).trigger(
                    "cd", DownstreamTriggerParams(image_tag="42", source_run_id=42)
                )
                assert run_id == 3
                assert mock_post.call_args.kwargs["json"] == {
                    "pipelineId": "cd",
                    "params": {"imageTag": "42", "sourceRunId": 42},
                }

        asyncio.run(run_test())

    def test_unreachable_downstream_fails_loudly(self):
        async def run_test():
            with patch("httpx.AsyncClient.post", side_effect=httpx.ConnectError("refused")) as mock_post, \
                 patch("asyncio.sleep", new_callable=AsyncMock):
                target = HttpDownstream("https://cd.example/trigger")
                with pytest.raises(TransientInfraError):
                    await PipelineChainer({"cd": target}).trigger(
                        "cd", DownstreamTriggerParams(image_tag="42", source_run_id=42)
                    )
                assert mock_post.call_count == 3

        asyncio.run(run_test())

    def test_http_target_requires_url(self):
        with pytest.raises(ConfigurationError):
            HttpDownstream("")


# ---------------------------------------------------------------------------
# 2. Notifier
# ---------------------------------------------------------------------------
class TestNotifier:

    def _event(self):
        return NotificationEvent(run_id=42, kind="CI", status="SUCCEEDED", summary="published repo/app:42")

    def test_posts_to_every_channel(self):
        async def run_test():
            with patch("httpx.AsyncClient.post", return_value=_response(200)) as mock_post:
                notifier = Notifier(channels=["https://a.example/hook", "https://b.example/hook"])
                await notifier.notify(self._event())
                assert mock_post.call_count == 2
                assert mock_post.call_args.kwargs["json"]["runId"] == 42
                assert notifier.delivered == 2

        asyncio.run(run_test())

    def test_delivery_errors_are_swallowed(self):
        async def run_test():
            with patch("httpx.AsyncClient.post", side_effect=[httpx.ConnectError("down"), _response(500)]):
                notifier = Notifier(channels=["https://a.example/hook", "https://b.example/hook"])
                await notifier.notify(self._event())
                assert notifier.dropped == 2
                assert notifier.delivered == 0

        asyncio.run(run_test())

    def test_no_channels_only_logs(self):
        async def run_test():
            with patch("httpx.AsyncClient.post") as mock_post:
                await Notifier(channels=[]).notify(self._event())
                mock_post.assert_not_called()

        asyncio.run(run_test())


# ---------------------------------------------------------------------------
# 3. Retry policy
# ---------------------------------------------------------------------------
class TestRetry:

    def test_transient_classification(self):
        assert is_transient(TransientInfraError("x"))
        assert is_transient(httpx.ReadTimeout("slow"))
        assert is_transient(httpx.HTTPStatusError("5xx", request=MagicMock(), response=_response(503)))
        assert not is_transient(httpx.HTTPStatusError("4xx", request=MagicMock(), response=_response(404)))
        assert not is_transient(ValueError("x"))

    def test_recovers_after_transient_failure(self):
        call = AsyncMock(side_effect=[httpx.ConnectError("blip"), "ok"])

        async def run_test():
            with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
                result = await with_retries(call, "ping service", attempts=3, backoff_seconds=2)
                mock_sleep.assert_called_once_with(2)
                return result

        assert asyncio.run(run_test()) == "ok"

    def test_gives_up_after_attempts(self):
        call = AsyncMock(side_effect=httpx.ConnectError("down"))

        async def run_test():
            with patch("asyncio.sleep", new_callable=AsyncMock):
                await with_retries(call, "ping service", attempts=2, backoff_seconds=1)

        with pytest.raises(TransientInfraError) as exc:
            asyncio.run(run_test())
        assert call.call_count == 2
        assert "down" in exc.value.details["last_error"]

    def test_credentials_error_not_retried(self):
        error = httpx.HTTPStatusError("denied", request=MagicMock(), response=_response(401))
        call = AsyncMock(side_effect=error)
        with pytest.raises(ConfigurationError):
            asyncio.run(with_retries(call, "ping service", attempts=3, backoff_seconds=0))
        assert call.call_count == 1

    def test_non_transient_error_surfaces_unchanged(self):
        call = AsyncMock(side_effect=KeyError("runId"))
        with pytest.raises(KeyError):
            asyncio.run(with_retries(call, "ping service", attempts=3, backoff_seconds=0))
        assert call.call_count == 1
