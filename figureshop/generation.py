"""
Action figure image generation.

Two OpenAI calls: a vision model describes the uploaded photo as a stylized
80s action figure, then the images API renders that description together with
the customer's text fields. Rendered images go into the ArtifactStore.
"""
import io
import base64
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx
from openai import OpenAI, OpenAIError
from PIL import Image, UnidentifiedImageError

from .artifacts import ArtifactStore
from .config import Settings
from .errors import UpstreamError, ValidationError
from .models import Customization

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "Describe this image as a stylized action figure."
USER_PROMPT = "Create an 80s-style plastic action figure from this."

# Formats the vision API accepts as-is; anything else is re-encoded as JPEG
PASSTHROUGH_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}

MAX_DESCRIPTION_CHARS = 3000


@dataclass
class GenerationResult:
    """Prompt used for rendering and the stored artifact references."""
    prompt: str
    artifacts: List[str]


def prepare_photo(photo: bytes) -> tuple[bytes, str]:
    """
    Validate an uploaded photo and return (bytes, mime type) for the vision API.

    Raises:
        ValidationError: the upload is empty or not an image
    """
    if not photo:
        raise ValidationError("No photo uploaded")

    try:
        with Image.open(io.BytesIO(photo)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError(f"Uploaded file is not a valid image: {e}") from e

    if image_format in PASSTHROUGH_FORMATS:
        return photo, PASSTHROUGH_FORMATS[image_format]

    # verify() leaves the image unusable, so open it again to convert
    with Image.open(io.BytesIO(photo)) as img:
        out = io.BytesIO()
        img.convert("RGB").save(out, format="JPEG")
    return out.getvalue(), "image/jpeg"


def build_render_prompt(description: str, customization: Customization) -> str:
    """Combine the vision description with the customer's text fields."""
    parts = [
        description.strip()[:MAX_DESCRIPTION_CHARS],
        "",
        "Render this as a vintage 1980s plastic action figure sealed in a "
        "blister pack on an illustrated cardboard backing card.",
    ]
    if customization.figure_name:
        parts.append(f'The card prominently shows the figure name "{customization.figure_name}".')
    if customization.accessories:
        parts.append(f"Include these accessories in the pack: {customization.accessories}.")
    if customization.tagline:
        parts.append(f'Print the tagline "{customization.tagline}" on the card.')
    return "\n".join(parts)


class ImageGenerator:
    """Generates action figure renders with OpenAI."""

    def __init__(
        self,
        settings: Settings,
        artifacts: ArtifactStore,
        client: Optional[OpenAI] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.settings = settings
        self.artifacts = artifacts
        self._client = client
        self._http = http

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.settings.is_openai_configured:
                raise UpstreamError("OPENAI_API_KEY not configured")
            self._client = OpenAI(api_key=self.settings.openai_api_key)
        return self._client

    def describe(self, photo: bytes, mime_type: str) -> str:
        """Ask the vision model for an action figure description of the photo."""
        data_url = f"data:{mime_type};base64,{base64.b64encode(photo).decode('ascii')}"
        try:
            completion = self.client.chat.completions.create(
                model=self.settings.openai_vision_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": USER_PROMPT},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    },
                ],
            )
        except OpenAIError as e:
            logger.error("OpenAI vision error: %s", e)
            raise UpstreamError(f"Image description failed: {e}") from e

        description = completion.choices[0].message.content or ""
        if not description.strip():
            raise UpstreamError("Image description was empty")
        return description

    def _fetch(self, url: str) -> bytes:
        try:
            if self._http is not None:
                response = self._http.get(url)
            else:
                response = httpx.get(url, timeout=60.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Error downloading rendered image: %s", e)
            raise UpstreamError(f"Could not download rendered image: {e}") from e
        return response.content

    def render(self, prompt: str) -> bytes:
        """Render one image for the prompt and return its PNG bytes."""
        params = {
            "model": self.settings.openai_image_model,
            "prompt": prompt,
            "size": self.settings.image_size,
            "n": 1,
        }
        if self.settings.openai_image_model.startswith("dall-e"):
            params["response_format"] = "b64_json"

        try:
            result = self.client.images.generate(**params)
        except OpenAIError as e:
            logger.error("OpenAI image error: %s", e)
            raise UpstreamError(f"Image rendering failed: {e}") from e

        if not result.data:
            raise UpstreamError("Image rendering returned no images")

        image = result.data[0]
        if image.b64_json:
            return base64.b64decode(image.b64_json)
        if image.url:
            return self._fetch(image.url)
        raise UpstreamError("Image rendering returned neither data nor URL")

    def generate(self, photo: bytes, customization: Customization) -> GenerationResult:
        """
        Turn a customer photo into stored action figure renders.

        Raises:
            ValidationError: the upload is not an image
            UpstreamError: an OpenAI call failed
        """
        photo, mime_type = prepare_photo(photo)

        logger.info("Describing photo (%s, %d bytes)", mime_type, len(photo))
        description = self.describe(photo, mime_type)
        prompt = build_render_prompt(description, customization)
        logger.debug("Render prompt: %s", prompt)

        refs = []
        for _ in range(max(1, self.settings.images_per_request)):
            refs.append(self.artifacts.save(self.render(prompt), suffix=".png"))

        logger.info("Generated %d artifact(s)", len(refs))
        return GenerationResult(prompt=prompt, artifacts=refs)
