"""Replicate adapter - image and video generation via asynchronous predictions."""

import logging
import time
from math import gcd
from typing import Any, Callable, Dict, List, Optional

import httpx

from .base import (
    GenerationResult,
    ProviderAdapter,
    ProviderConfig,
    ProviderError,
    ProviderTimeoutError,
    call_with_retries,
    parse_image_resolution,
    parse_video_resolution,
)

logger = logging.getLogger(__name__)

REPLICATE_API_BASE = "https://api.replicate.com/v1"

DEFAULT_IMAGE_MODEL = "black-forest-labs/flux-schnell"
DEFAULT_VIDEO_MODEL = "minimax/video-01"

TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}

ASPECT_RATIOS = {
    (1, 1): "1:1",
    (4, 7): "9:16",
    (7, 4): "16:9",
}


def _aspect_ratio(width: int, height: int) -> str:
    divisor = gcd(width, height)
    return ASPECT_RATIOS.get((width // divisor, height // divisor), "1:1")


class ReplicateAdapter(ProviderAdapter):
    """Runs Replicate predictions and waits for them to finish.

    Replicate is asynchronous: a prediction is created, then polled until it
    reaches a terminal status. The whole loop lives inside this adapter and
    is bounded by config.max_wait_seconds.
    """

    def __init__(
        self,
        config: ProviderConfig,
        api_token: str,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(config)
        if not api_token:
            raise ValueError("api_token is required and cannot be empty")
        self._client = client or httpx.Client(
            base_url=config.api_url or REPLICATE_API_BASE,
            timeout=config.timeout_ms / 1000.0,
        )
        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }
        self._sleep = sleep
        self._clock = clock

    # =========================================================================
    # Transport
    # =========================================================================

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, headers=self._headers, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, f"request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"transport error: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ProviderError(
                self.name, f"API error {response.status_code}: {detail}", response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self.name, "response was not valid JSON") from e
        if not isinstance(data, dict) or "id" not in data or "status" not in data:
            raise ProviderError(self.name, "malformed prediction payload")
        return data

    def _submit(self, model: str, model_input: Dict[str, Any]) -> Dict[str, Any]:
        """Create a prediction. Only this POST is retried: nothing is running yet."""
        prediction = call_with_retries(
            self.name,
            self.config.max_retries,
            lambda: self._request("POST", f"/models/{model}/predictions", {"input": model_input}),
        )
        logger.info("Replicate prediction %s created for %s", prediction["id"], model)
        return prediction

    def _wait(self, prediction: Dict[str, Any]) -> Dict[str, Any]:
        """Poll a prediction until it is terminal or the deadline passes.

        A failed poll is retried against the same prediction on the next
        tick; it never creates a new one.
        """
        prediction_id = prediction["id"]
        started = self._clock()
        deadline = started + self.config.max_wait_seconds

        while prediction["status"] not in TERMINAL_STATUSES:
            if self._clock() >= deadline:
                raise ProviderTimeoutError(self.name, prediction_id, self._clock() - started)
            self._sleep(self.config.poll_interval_seconds)
            try:
                prediction = self._request("GET", f"/predictions/{prediction_id}")
            except ProviderError as e:
                logger.warning("Polling Replicate prediction %s failed, polling again: %s", prediction_id, e)
                continue
            logger.debug("Replicate prediction %s status: %s", prediction_id, prediction["status"])

        return prediction

    def _run(self, model: str, model_input: Dict[str, Any]) -> Dict[str, Any]:
        """Submit and wait, resubmitting only when the prediction itself failed."""
        resubmits = 0
        while True:
            prediction = self._wait(self._submit(model, model_input))
            if prediction["status"] == "succeeded":
                return prediction

            error = prediction.get("error") or prediction["status"]
            message = f"prediction {prediction['id']} {prediction['status']}: {error}"
            if resubmits >= self.config.max_retries:
                logger.error("%s: %s", self.name, message)
                raise ProviderError(self.name, message)
            resubmits += 1
            logger.warning(
                "Replicate %s, resubmitting (%d/%d)", message, resubmits, self.config.max_retries
            )

    def _output_urls(self, prediction: Dict[str, Any]) -> List[str]:
        output = prediction.get("output")
        items = output if isinstance(output, list) else [output]
        urls = []
        for item in items:
            if isinstance(item, dict):
                item = item.get("url")
            if isinstance(item, str) and item:
                urls.append(item)
        if not urls:
            raise ProviderError(self.name, f"prediction {prediction['id']} returned no output URL")
        return urls

    # =========================================================================
    # Generation
    # =========================================================================

    def generate_image(
        self,
        prompt: str,
        resolution: str = "1024x1024",
        quality: str = "standard",
        count: int = 1,
        seed: Optional[int] = None,
        model_identifier: Optional[str] = None,
    ) -> GenerationResult:
        model = model_identifier or DEFAULT_IMAGE_MODEL
        width, height = parse_image_resolution(resolution)
        model_input: Dict[str, Any] = {
            "prompt": prompt,
            "aspect_ratio": _aspect_ratio(width, height),
            "num_outputs": count,
            "output_format": "png",
            "output_quality": 90 if quality == "hd" else 80,
        }
        if seed is not None:
            model_input["seed"] = seed

        start = time.time()
        prediction = self._run(model, model_input)
        urls = self._output_urls(prediction)
        return GenerationResult(
            provider_name=self.name,
            model_identifier=model,
            durable_asset_url=urls[0],
            asset_urls=urls,
            processing_time_ms=int((time.time() - start) * 1000),
            width=width,
            height=height,
            content_type="image/png",
            provider_metadata={
                "prediction_id": prediction["id"],
                "metrics": prediction.get("metrics", {}),
            },
        )

    def generate_video(
        self,
        prompt: str,
        keyframe_ref: Optional[str] = None,
        duration_seconds: float = 5,
        resolution: str = "720p",
        fps: int = 24,
        model_identifier: Optional[str] = None,
    ) -> GenerationResult:
        model = model_identifier or DEFAULT_VIDEO_MODEL
        width, height = parse_video_resolution(resolution)
        model_input: Dict[str, Any] = {
            "prompt": prompt,
            "duration": duration_seconds,
            "fps": fps,
        }
        if keyframe_ref:
            model_input["first_frame_image"] = keyframe_ref

        logger.info(
            "Generating %.1fs video at %s with %s (keyframe: %s)",
            duration_seconds, resolution, model, bool(keyframe_ref),
        )
        start = time.time()
        prediction = self._run(model, model_input)
        urls = self._output_urls(prediction)
        return GenerationResult(
            provider_name=self.name,
            model_identifier=model,
            durable_asset_url=urls[0],
            asset_urls=urls,
            processing_time_ms=int((time.time() - start) * 1000),
            width=width,
            height=height,
            duration_seconds=duration_seconds,
            content_type="video/mp4",
            provider_metadata={
                "prediction_id": prediction["id"],
                "fps": fps,
                "metrics": prediction.get("metrics", {}),
            },
        )

    def close(self) -> None:
        self._client.close()
