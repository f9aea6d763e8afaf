"""
Headshot generation workflow.

A headshot moves pending -> processing -> completed, or to failed from any
non-terminal state. The pipeline runs analysis -> prompt -> generation ->
storage; every step failure is tagged with the step name, and the whole run
is raced against a wall-clock timeout. All state lives in the record store;
transitions are conditional on the current status, so a late result after a
timeout (or any call against a terminal row) changes nothing.
"""

import json
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import headshot_store as store
import params_config
from blob_storage import GENERATED_FOLDER, make_blob_path

logger = logging.getLogger(__name__)

STEP_ANALYSIS = "analysis"
STEP_PROMPT = "prompt"
STEP_GENERATION = "generation"
STEP_STORAGE = "storage"
STEP_TIMEOUT = "timeout"
STEP_PAYMENT = "payment"
STEP_STALE = "stale"

GENERATED_CONTENT_TYPE = "image/png"


class GenerationError(Exception):
    """Base class for rejected generation requests."""


class GenerationRequestError(GenerationError):
    """The generation request is malformed (e.g. no image ids)."""


class ImageOwnershipError(GenerationError):
    """A requested image is not an uploaded image owned by the caller."""

    def __init__(self, image_ids: Sequence[str]):
        super().__init__(f"Images not available for generation: {', '.join(image_ids)}")
        self.image_ids = list(image_ids)


class PipelineStepError(Exception):
    """A pipeline step failed. ``step`` names the step."""

    def __init__(self, step: str, cause: Any):
        super().__init__(f"{step} step failed: {cause}")
        self.step = step
        self.cause = cause


@dataclass
class PipelineServices:
    """External collaborators of the pipeline."""
    vision: Any
    blob: Any


@dataclass
class GenerationRequestResult:
    headshot: store.Headshot
    checkout_url: str
    reused: bool = False


def compute_request_key(image_ids: Sequence[str], preferences: Dict[str, Any]) -> str:
    """Content-derived key: sorted image ids plus normalized preferences."""
    payload = json.dumps(
        {"image_ids": sorted(set(image_ids)), "preferences": preferences or {}},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


def validate_generation_request(user_id: str, image_ids: Sequence[str]) -> List[store.Image]:
    """
    Resolve the requested images, rejecting the whole request if any id is
    unknown, owned by someone else, or not an uploaded image.
    """
    if not image_ids:
        raise GenerationRequestError("No image IDs provided")

    unique_ids = list(dict.fromkeys(image_ids))
    found = {image.id: image for image in store.get_images(user_id, unique_ids)}
    rejected = [
        image_id for image_id in unique_ids
        if image_id not in found or found[image_id].type != store.IMAGE_TYPE_UPLOADED
    ]
    if rejected:
        raise ImageOwnershipError(rejected)
    return [found[image_id] for image_id in unique_ids]


def request_generation(
    user_id: str,
    image_ids: Sequence[str],
    preferences: Dict[str, Any],
    create_checkout: Callable[[str], str],
    dedupe: bool = False,
    open_checkout: Optional[Callable[[str], Optional[str]]] = None,
) -> GenerationRequestResult:
    """
    Create a pending headshot and open a checkout session for it.

    Every call creates a new headshot unless ``dedupe`` is set, in which case
    an identical in-flight request is reused. A reused headshot keeps its
    existing open checkout (looked up with ``open_checkout``) so it can only
    be paid for once; a new session is opened only if none is left.

    ``create_checkout`` receives the headshot id and returns the redirect URL.
    The pipeline is not started here; the caller schedules ``run_generation``.

    Raises:
        GenerationRequestError: empty image list
        ImageOwnershipError: an id is not an owned, uploaded image
        Exception: whatever ``create_checkout`` raised, after the new
            headshot was marked failed
    """
    images = validate_generation_request(user_id, image_ids)
    image_ids = [image.id for image in images]
    request_key = compute_request_key(image_ids, preferences)

    headshot = store.find_active_headshot(user_id, request_key) if dedupe else None
    reused = headshot is not None
    if reused:
        logger.info(f"Reusing in-flight headshot {headshot.id} for identical request")
        existing_url = open_checkout(headshot.id) if open_checkout else None
        if existing_url:
            return GenerationRequestResult(headshot=headshot, checkout_url=existing_url, reused=True)
    else:
        headshot = store.create_headshot(user_id, image_ids, preferences, request_key)

    try:
        checkout_url = create_checkout(headshot.id)
    except Exception as e:
        logger.error(f"Checkout failed for headshot {headshot.id}: {e}")
        if not reused:
            store.fail_headshot(headshot.id, user_id, f"Checkout failed: {e}", step=STEP_PAYMENT)
        raise

    return GenerationRequestResult(headshot=headshot, checkout_url=checkout_url, reused=reused)


async def _run_step(headshot_id: str, user_id: str, step: str, func: Callable, *args):
    if not store.set_step(headshot_id, user_id, step):
        raise PipelineStepError(step, "headshot is no longer processing")
    logger.info(f"Headshot {headshot_id}: {step} step")
    try:
        return await func(*args)
    except PipelineStepError:
        raise
    except Exception as e:
        raise PipelineStepError(step, e) from e


async def store_generated_image(user_id: str, image_url: str, services: PipelineServices) -> store.Image:
    """Download the generated asset, put it in the blob store, then record it."""
    data = await services.vision.download(image_url)
    path = make_blob_path(GENERATED_FOLDER, user_id, GENERATED_CONTENT_TYPE)
    loop = asyncio.get_running_loop()
    public_url = await loop.run_in_executor(
        None, services.blob.put, path, data, GENERATED_CONTENT_TYPE
    )
    return store.create_image(
        user_id, store.IMAGE_TYPE_GENERATED, public_url,
        storage_path=path, content_type=GENERATED_CONTENT_TYPE,
    )


async def run_pipeline(headshot_id: str, user_id: str, services: PipelineServices) -> bool:
    """
    Drive one pending headshot through analysis, prompt, generation and storage.

    Returns True if the headshot was completed, False if it was not pending
    when the run started or stopped being processing before completion.
    Raises: PipelineStepError tagged with the failing step
    """
    headshot = store.get_headshot(headshot_id, user_id)
    if not store.start_processing(headshot_id, user_id):
        logger.info(f"Headshot {headshot_id} is {headshot.status}, not starting pipeline")
        return False

    sources = store.get_headshot_source_images(headshot_id, user_id)
    if not sources:
        raise PipelineStepError(STEP_ANALYSIS, "no source images")

    description = await _run_step(
        headshot_id, user_id, STEP_ANALYSIS,
        services.vision.describe, [image.url for image in sources],
    )
    prompt = await _run_step(
        headshot_id, user_id, STEP_PROMPT,
        services.vision.compose_prompt, description, headshot.preferences,
    )
    if not store.set_prompt(headshot_id, user_id, prompt):
        raise PipelineStepError(STEP_PROMPT, "headshot is no longer processing")

    image_url = await _run_step(
        headshot_id, user_id, STEP_GENERATION,
        services.vision.generate_image, prompt,
    )
    generated = await _run_step(
        headshot_id, user_id, STEP_STORAGE,
        store_generated_image, user_id, image_url, services,
    )

    if not store.complete_headshot(headshot_id, user_id, generated.id):
        logger.warning(f"Headshot {headshot_id} left processing before completion; result {generated.id} discarded")
        return False
    return True


def _record_failure(headshot_id: str, user_id: str, error: str, step: Optional[str]) -> None:
    try:
        if store.fail_headshot(headshot_id, user_id, error, step=step):
            logger.info(f"Headshot {headshot_id} marked failed ({step or 'unknown step'})")
        else:
            logger.info(f"Headshot {headshot_id} already terminal, failure not recorded")
    except Exception:
        logger.exception(f"Could not mark headshot {headshot_id} failed")


async def run_generation(
    headshot_id: str,
    user_id: str,
    services: PipelineServices,
    timeout: float = params_config.GENERATION_TIMEOUT_SECONDS,
) -> Optional[store.Headshot]:
    """
    Background entry point: run the pipeline bounded by ``timeout`` seconds and
    persist the outcome. Errors are recorded on the row, never raised.

    Returns the headshot as persisted after the run.
    """
    logger.info("=" * 60)
    logger.info(f"GENERATION STARTED - Headshot {headshot_id}")

    try:
        completed = await asyncio.wait_for(
            run_pipeline(headshot_id, user_id, services), timeout=timeout
        )
        if completed:
            logger.info(f"Headshot {headshot_id} completed")
    except asyncio.TimeoutError:
        logger.error(f"Headshot {headshot_id} timed out after {timeout:g}s")
        _record_failure(headshot_id, user_id, f"Generation timed out after {timeout:g} seconds", STEP_TIMEOUT)
    except PipelineStepError as e:
        logger.exception(f"Headshot {headshot_id} failed in {e.step} step")
        _record_failure(headshot_id, user_id, str(e), e.step)
    except Exception as e:
        logger.exception(f"Headshot {headshot_id} failed unexpectedly")
        _record_failure(headshot_id, user_id, f"Unexpected error: {e}", None)

    logger.info("=" * 60)
    try:
        return store.get_headshot(headshot_id, user_id)
    except store.NotFoundError:
        return None


def fail_stale_headshots(max_age_seconds: int = params_config.STALE_HEADSHOT_SECONDS) -> int:
    """
    Fail headshots stuck in pending/processing for longer than ``max_age_seconds``
    (e.g. after a crash mid-pipeline). Returns the number of rows failed.
    """
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()
    failed = 0
    for headshot in store.find_stale_headshots(cutoff):
        if store.fail_headshot(
            headshot.id, headshot.user_id,
            f"Abandoned in {headshot.status} (last step: {headshot.step or 'none'})",
            step=STEP_STALE,
        ):
            failed += 1
    if failed:
        logger.info(f"Failed {failed} stale headshot(s)")
    return failed
