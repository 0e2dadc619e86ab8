"""
Generation Providers - HTTP clients for the try-on, video and 3D model services.

Each provider exposes the same narrow contract:
- submit(input) -> ProviderSubmission (a job id, or an immediate output)
- get_status(job_id) -> JobStatus (pending | completed | failed)

Provider-specific output shapes are handled by a matching OutputExtractor,
which normalizes raw output to one ExtractedArtifact or None.
"""

import base64
import binascii
import re
from typing import Any, Protocol

import httpx

from gateway.config import Settings, settings as default_settings
from gateway.exceptions import ProviderError
from gateway.models.domain import ExtractedArtifact, JobStatus, ParsedInput, ProviderSubmission
from gateway.observability.logging import get_logger

logger = get_logger(__name__)

_DATA_URI_RE = re.compile(r"^data:([\w/+.-]+);base64,")


# ============================================================================
# Output Extractors
# ============================================================================


class OutputExtractor(Protocol):
    """Normalizes one provider's raw output to an artifact."""

    def extract(self, output: Any) -> ExtractedArtifact | None: ...


class TryOnImageExtractor:
    """
    FASHN output: a list whose first item is a data URI, an http(s) URL,
    or bare base64 PNG data.
    """

    def extract(self, output: Any) -> ExtractedArtifact | None:
        if isinstance(output, list):
            output = output[0] if output else None
        if not isinstance(output, str) or not output:
            return None

        if output.startswith(("http://", "https://")):
            return ExtractedArtifact(url=output, content_type="image/png", extension="png")

        content_type = "image/png"
        payload = output
        match = _DATA_URI_RE.match(output)
        if match:
            content_type = match.group(1)
            payload = output[match.end():]

        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return None
        if not data:
            return None
        extension = content_type.split("/")[-1].replace("jpeg", "jpg")
        return ExtractedArtifact(data=data, content_type=content_type, extension=extension)


class VideoExtractor:
    """FAL output: {"video": {"url": ...}} (or a bare url string under "video")."""

    def extract(self, output: Any) -> ExtractedArtifact | None:
        if not isinstance(output, dict):
            return None
        video = output.get("video")
        if isinstance(video, dict):
            video = video.get("url")
        if isinstance(video, str) and video.startswith(("http://", "https://")):
            return ExtractedArtifact(url=video, content_type="video/mp4", extension="mp4")
        return None


class Model3DExtractor:
    """
    Replicate TRELLIS output, first match wins:
    model_file (url string or {"url"}), glb, a list item containing ".glb",
    or the output itself as a url string.
    """

    def extract(self, output: Any) -> ExtractedArtifact | None:
        url: Any = None
        if isinstance(output, dict):
            if "model_file" in output:
                url = output["model_file"]
                if isinstance(url, dict):
                    url = url.get("url")
            elif "glb" in output:
                url = output["glb"]
        elif isinstance(output, list):
            url = next((item for item in output if isinstance(item, str) and ".glb" in item), None)
        elif isinstance(output, str):
            url = output

        if isinstance(url, str) and url.startswith(("http://", "https://")):
            return ExtractedArtifact(url=url, content_type="model/gltf-binary", extension="glb")
        return None


# ============================================================================
# Providers
# ============================================================================


class GenerationProvider(Protocol):
    """Contract every generation provider satisfies."""

    name: str
    extractor: OutputExtractor

    async def submit(self, parsed: ParsedInput) -> ProviderSubmission: ...

    async def get_status(self, job_id: str) -> JobStatus: ...

    async def download(self, url: str) -> bytes: ...


class HttpProvider:
    """Shared HTTP plumbing: client lifecycle and error normalization."""

    name = "provider"

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.provider_timeout_seconds)
        return self._http_client

    def _headers(self) -> dict[str, str]:
        return {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self.http_client.request(
                method, url, headers=self._headers(), **kwargs
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "provider_http_error",
                provider=self.name,
                status=e.response.status_code,
                text=e.response.text[:500],
            )
            raise ProviderError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("provider_request_failed", provider=self.name, error=str(e))
            raise ProviderError(self.name, str(e) or type(e).__name__) from e
        except ValueError as e:
            logger.error("provider_invalid_json", provider=self.name, error=str(e))
            raise ProviderError(self.name, "invalid JSON response") from e

    async def download(self, url: str) -> bytes:
        """Fetch a generated artifact from the provider's CDN."""
        try:
            response = await self.http_client.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "artifact_download_failed", provider=self.name, status=e.response.status_code
            )
            raise ProviderError(self.name, f"artifact download HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("artifact_download_failed", provider=self.name, error=str(e))
            raise ProviderError(self.name, f"artifact download failed: {e}") from e
        return response.content

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


class FashnTryOnProvider(HttpProvider):
    """FASHN virtual try-on (asynchronous job API)."""

    name = "fashn"

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(settings, http_client)
        self.extractor = TryOnImageExtractor()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.fashn_api_key}"}

    async def submit(self, parsed: ParsedInput) -> ProviderSubmission:
        body = {
            "model_name": self.settings.fashn_model_name,
            "inputs": {
                "model_image": parsed.source_image,
                "garment_image": parsed.garment_image,
                "category": "one-pieces",
                "mode": "quality",
                "output_format": "png",
                "return_base64": True,
            },
        }
        data = await self._request("POST", f"{self.settings.fashn_base_url}/v1/run", json=body)
        if data.get("error"):
            raise ProviderError(self.name, _error_text(data["error"]))
        job_id = data.get("id")
        if not job_id:
            raise ProviderError(self.name, "no prediction id returned")
        return ProviderSubmission(provider=self.name, job_id=str(job_id))

    async def get_status(self, job_id: str) -> JobStatus:
        data = await self._request("GET", f"{self.settings.fashn_base_url}/v1/status/{job_id}")
        status = data.get("status")
        if status == "completed":
            return JobStatus(state="completed", output=data.get("output"))
        if status == "failed":
            return JobStatus(state="failed", error=_error_text(data.get("error")))
        return JobStatus(state="pending")


class FalVideoProvider(HttpProvider):
    """FAL queue API running the image-to-video model."""

    name = "fal"

    PROMPT = (
        "The model in the image performs a slow, elegant 360-degree turn in place in a "
        "bridal fitting room, showcasing every angle of the dress. The camera is static "
        "and steady at waist height, framing the full body and dress."
    )
    NEGATIVE_PROMPT = (
        "blur, distort, low quality, exaggerated movement, face morphing, face change, "
        "cartoon, anime, disfigured, deformed, stiff, robotic, multiple people"
    )

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(settings, http_client)
        self.extractor = VideoExtractor()

    @property
    def app_url(self) -> str:
        """Queue requests live under the app id (owner/app), not the full model path."""
        app_id = "/".join(self.settings.fal_video_model.split("/")[:2])
        return f"{self.settings.fal_base_url}/{app_id}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Key {self.settings.fal_api_key}"}

    async def submit(self, parsed: ParsedInput) -> ProviderSubmission:
        body = {
            "prompt": self.PROMPT,
            "image_url": parsed.primary_image,
            "duration": "5",
            "negative_prompt": self.NEGATIVE_PROMPT,
            "cfg_scale": 0.5,
        }
        data = await self._request(
            "POST", f"{self.settings.fal_base_url}/{self.settings.fal_video_model}", json=body
        )
        job_id = data.get("request_id")
        if not job_id:
            raise ProviderError(self.name, "no request id returned")
        return ProviderSubmission(provider=self.name, job_id=str(job_id))

    async def get_status(self, job_id: str) -> JobStatus:
        data = await self._request("GET", f"{self.app_url}/requests/{job_id}/status")
        status = data.get("status")
        if status in ("IN_QUEUE", "IN_PROGRESS"):
            return JobStatus(state="pending")
        if status == "COMPLETED":
            if data.get("error"):
                return JobStatus(state="failed", error=_error_text(data["error"]))
            result = await self._request("GET", f"{self.app_url}/requests/{job_id}")
            return JobStatus(state="completed", output=result)
        return JobStatus(state="failed", error=f"unexpected status {status}")


class ReplicateModel3DProvider(HttpProvider):
    """Replicate predictions API running TRELLIS image-to-3D."""

    name = "replicate"

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(settings, http_client)
        self.extractor = Model3DExtractor()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.replicate_api_token}"}

    async def submit(self, parsed: ParsedInput) -> ProviderSubmission:
        body = {
            "version": self.settings.replicate_model3d_version,
            "input": {
                "images": [parsed.primary_image],
                "generate_model": True,
                "generate_color": True,
            },
        }
        data = await self._request(
            "POST", f"{self.settings.replicate_base_url}/v1/predictions", json=body
        )
        if data.get("status") == "succeeded" and data.get("output") is not None:
            return ProviderSubmission(provider=self.name, output=data["output"])
        job_id = data.get("id")
        if not job_id:
            raise ProviderError(self.name, "no prediction id returned")
        return ProviderSubmission(provider=self.name, job_id=str(job_id))

    async def get_status(self, job_id: str) -> JobStatus:
        data = await self._request(
            "GET", f"{self.settings.replicate_base_url}/v1/predictions/{job_id}"
        )
        status = data.get("status")
        if status == "succeeded":
            return JobStatus(state="completed", output=data.get("output"))
        if status in ("failed", "canceled"):
            return JobStatus(state="failed", error=_error_text(data.get("error")) or status)
        return JobStatus(state="pending")


def _error_text(error: Any) -> str:
    """Provider errors arrive as strings or {"message": ...} objects."""
    if error is None:
        return ""
    if isinstance(error, dict):
        return str(error.get("message") or error.get("name") or error)
    return str(error)
