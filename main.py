"""
Headshot Studio Web Application
FastAPI backend that turns uploaded photos into AI-generated professional headshots,
paid for with a one-time hosted checkout.
"""

import os
import uuid
import asyncio
import logging
import sys
import hashlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, File, UploadFile, BackgroundTasks, HTTPException, Request, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

# Rate limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

# OAuth
from authlib.integrations.starlette_client import OAuth

# Billing
from dodopayments import DodoPayments

import headshot_store as store
import params_config
from db_store import (
    init_db,
    create_user,
    get_user_by_email,
    get_user_by_id,
    get_user_by_oauth,
    link_oauth_identity,
    record_checkout_session,
    get_open_checkout_url,
    mark_payment_succeeded,
    record_webhook,
    is_webhook_processed,
)
import blob_storage
from blob_storage import (
    BlobStorageError,
    UploadValidationError,
    UPLOADED_FOLDER,
    build_blob_uploader,
    make_blob_path,
    validate_upload,
)
from vision_service import build_vision_service
from payments import (
    PaymentError,
    create_headshot_checkout,
    extract_payment_event,
    is_payment_succeeded,
    unwrap_webhook,
)
from generation import (
    GenerationRequestError,
    ImageOwnershipError,
    PipelineServices,
    fail_stale_headshots,
    request_generation,
    run_generation,
    validate_generation_request,
)
from schemas import GenerateRequest

# Configure logging based on environment
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

logger.info("=" * 60)
logger.info("Starting Headshot Studio")
logger.info("=" * 60)

# Security Configuration
ENVIRONMENT = os.environ.get("ENVIRONMENT", "production").lower()
RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "true").lower() == "true"
UPLOAD_RATE_LIMIT = os.environ.get("UPLOAD_RATE_LIMIT", "30/minute")
GENERATE_RATE_LIMIT = os.environ.get("GENERATE_RATE_LIMIT", "5/minute")
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "*").split(",")

# Workflow Configuration
DEDUPE_GENERATION_REQUESTS = os.environ.get("DEDUPE_GENERATION_REQUESTS", "false").lower() in ("true", "1", "yes")
REQUIRE_PAYMENT_BEFORE_GENERATION = os.environ.get(
    "REQUIRE_PAYMENT_BEFORE_GENERATION", "false"
).lower() in ("true", "1", "yes")
GENERATION_TIMEOUT_SECONDS = params_config.GENERATION_TIMEOUT_SECONDS
STALE_HEADSHOT_SECONDS = params_config.STALE_HEADSHOT_SECONDS

logger.info(f"Rate limiting: {RATE_LIMIT_ENABLED} (upload {UPLOAD_RATE_LIMIT}, generate {GENERATE_RATE_LIMIT})")
logger.info(f"Dedupe generation requests: {DEDUPE_GENERATION_REQUESTS}")
logger.info(f"Require payment before generation: {REQUIRE_PAYMENT_BEFORE_GENERATION}")
logger.info(f"Generation timeout: {GENERATION_TIMEOUT_SECONDS}s")

# Auth Configuration
SESSION_SECRET = os.environ.get("SESSION_SECRET", "")
if not SESSION_SECRET:
    if ENVIRONMENT == "production":
        logger.error("SESSION_SECRET is not set! Generating a random one (not secure for production).")
    else:
        logger.warning("SESSION_SECRET is not set; generating a temporary development secret.")
    SESSION_SECRET = uuid.uuid4().hex

OAUTH_GOOGLE_CLIENT_ID = os.environ.get("OAUTH_GOOGLE_CLIENT_ID", "")
OAUTH_GOOGLE_CLIENT_SECRET = os.environ.get("OAUTH_GOOGLE_CLIENT_SECRET", "")

# Billing Configuration
DODO_API_KEY = os.environ.get("DODO_PAYMENTS_API_KEY", "")
DODO_ENV = os.environ.get("DODO_PAYMENTS_ENVIRONMENT", "test_mode")
DODO_WEBHOOK_KEY = os.environ.get("DODO_PAYMENTS_WEBHOOK_KEY", "")
DODO_HEADSHOT_PRODUCT_ID = os.environ.get("DODO_HEADSHOT_PRODUCT_ID", "")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:3000")
if PUBLIC_BASE_URL.endswith("/"):
    PUBLIC_BASE_URL = PUBLIC_BASE_URL[:-1]

# AI Configuration
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
BFL_API_KEY = os.environ.get("BFL_API_KEY", "")

# Storage Configuration
S3_BUCKET = os.environ.get("S3_BUCKET", "")
S3_ACCESS_KEY_ID = os.environ.get("S3_ACCESS_KEY_ID", "")
S3_SECRET_ACCESS_KEY = os.environ.get("S3_SECRET_ACCESS_KEY", "")
S3_ENDPOINT_URL = os.environ.get("S3_ENDPOINT_URL", "")
S3_REGION = os.environ.get("S3_REGION", "")
S3_PUBLIC_BASE_URL = os.environ.get("S3_PUBLIC_BASE_URL", "")

logger.info(f"Google OAuth enabled: {bool(OAUTH_GOOGLE_CLIENT_ID)}")
logger.info(f"Dodo Payments enabled: {bool(DODO_API_KEY)}")
logger.info(f"Vision/generation enabled: {bool(OPENAI_API_KEY and BFL_API_KEY)}")
logger.info(f"Blob storage enabled: {bool(S3_BUCKET)}")

# Initialize database
init_db()

# External services
vision_service = build_vision_service(OPENAI_API_KEY, BFL_API_KEY)
blob_uploader = build_blob_uploader(
    bucket=S3_BUCKET,
    access_key_id=S3_ACCESS_KEY_ID,
    secret_access_key=S3_SECRET_ACCESS_KEY,
    endpoint_url=S3_ENDPOINT_URL,
    region=S3_REGION,
    public_base_url=S3_PUBLIC_BASE_URL,
)

dodo_client = None
if DODO_API_KEY:
    dodo_client = DodoPayments(
        bearer_token=DODO_API_KEY,
        environment=DODO_ENV,
        webhook_key=DODO_WEBHOOK_KEY,
    )
    logger.info("Dodo Payments client initialized")


def get_pipeline_services() -> Optional[PipelineServices]:
    """Collaborators for the generation pipeline, or None if not configured."""
    if vision_service is None or blob_uploader is None:
        return None
    return PipelineServices(vision=vision_service, blob=blob_uploader)


# Custom rate limit key function (session user, falling back to client IP)
def get_rate_limit_key(request: Request) -> str:
    """Generate rate limit key from session user or client IP."""
    user_id = request.session.get("user_id") if "session" in request.scope else None
    key = f"user:{user_id}" if user_id else f"ip:{get_client_ip(request)}"
    return hashlib.sha256(key.encode()).hexdigest()[:24]


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    elif request.client:
        return request.client.host
    return "unknown"


limiter = Limiter(key_func=get_rate_limit_key, enabled=RATE_LIMIT_ENABLED)


async def async_fail_stale_headshots(delay_seconds: int = 5):
    """Reaper that runs in background shortly after startup."""
    await asyncio.sleep(delay_seconds)
    try:
        count = fail_stale_headshots(STALE_HEADSHOT_SECONDS)
        logger.info(f"Stale headshot sweep completed ({count} failed)")
    except Exception:
        logger.exception("Stale headshot sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the stale-headshot reaper without blocking startup."""
    app.state.reaper_task = asyncio.create_task(async_fail_stale_headshots())
    logger.info("Application started")
    yield
    app.state.reaper_task.cancel()


app = FastAPI(
    title="Headshot Studio",
    version="1.0.0",
    docs_url="/docs" if ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if ENVIRONMENT == "development" else None,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
is_dev = ENVIRONMENT == "development"
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if is_dev else [origin.strip() for origin in ALLOWED_ORIGINS],
    allow_credentials=False,
    allow_methods=["*"] if is_dev else ["GET", "POST", "DELETE"],
    allow_headers=["*"] if is_dev else ["Content-Type"],
)

# Add session middleware
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    session_cookie="headshot_session",
    max_age=30 * 24 * 60 * 60,  # 30 days
    same_site="lax",
    https_only=ENVIRONMENT == "production",
)

# Initialize OAuth
oauth = OAuth()
enabled_providers = []
if OAUTH_GOOGLE_CLIENT_ID and OAUTH_GOOGLE_CLIENT_SECRET:
    oauth.register(
        name="google",
        client_id=OAUTH_GOOGLE_CLIENT_ID,
        client_secret=OAUTH_GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    enabled_providers.append("google")
    logger.info("Google OAuth registered")


# Security headers middleware
@app.middleware("http")
async def add_security_headers(request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors (400), not 422."""
    return JSONResponse(
        status_code=400,
        content={"detail": {
            "error": "invalid_request",
            "message": "Request body failed validation",
            "errors": jsonable_encoder(exc.errors()),
        }},
    )


def get_current_user_id(request: Request) -> str:
    """Resolve the signed-in user from the session, or reject with 401."""
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not get_user_by_id(user_id):
        request.session.pop("user_id", None)
        raise HTTPException(status_code=401, detail="User not found")
    return user_id


# ============= AUTH ROUTES =============

@app.get("/api/auth/providers")
async def get_auth_providers():
    """Return list of available OAuth providers."""
    return {"providers": enabled_providers}


@app.get("/api/auth/me")
async def get_auth_me(request: Request):
    """Get current user info from session."""
    user_id = request.session.get("user_id")
    if not user_id:
        return {"authenticated": False}

    user = get_user_by_id(user_id)
    if not user:
        request.session.pop("user_id", None)
        return {"authenticated": False}

    return {
        "authenticated": True,
        "user": {
            "id": user["id"],
            "email": user["email"],
            "name": user.get("name"),
            "avatar_url": user.get("avatar_url")
        }
    }


@app.post("/api/auth/logout")
async def logout(request: Request):
    """Clear user session."""
    request.session.pop("user_id", None)
    return {"success": True}


@app.get("/auth/login/google")
async def login_google(request: Request):
    """Redirect to Google OAuth."""
    if "google" not in enabled_providers:
        raise HTTPException(status_code=404, detail="Google login is not configured")

    return await oauth.google.authorize_redirect(
        request,
        f"{PUBLIC_BASE_URL}/auth/callback/google",
    )


@app.get("/auth/callback/google")
async def callback_google(request: Request):
    """Handle Google OAuth callback."""
    if "google" not in enabled_providers:
        raise HTTPException(status_code=404, detail="Google login is not configured")

    try:
        token = await oauth.google.authorize_access_token(request)
        user_info = token.get("userinfo") or {}
        if not user_info:
            user_info = await oauth.google.userinfo(token=token)

        email = (user_info.get("email") or "").strip().lower()
        sub = user_info.get("sub") or token.get("sub") or ""
        name = user_info.get("name")
        avatar_url = user_info.get("picture")

        if not email or not sub:
            raise HTTPException(status_code=400, detail="Google profile is missing required fields")

        user = get_user_by_oauth("google", sub)
        if not user:
            user = get_user_by_email(email)
        if not user:
            user_id, _ = create_user(email=email, name=name, avatar_url=avatar_url)
            user = get_user_by_id(user_id)
        if not user:
            raise HTTPException(status_code=500, detail="Unable to create user")

        link_oauth_identity(
            user_id=user["id"],
            provider="google",
            provider_user_id=sub,
            access_token=token.get("access_token"),
            refresh_token=token.get("refresh_token"),
        )

        request.session["user_id"] = user["id"]
        return RedirectResponse(url="/dashboard", status_code=302)
    except HTTPException:
        raise
    except Exception as exc:
        logger.error(f"Google OAuth callback error: {exc}")
        raise HTTPException(status_code=500, detail="Login failed")


# ============= IMAGE ROUTES =============

@app.post("/api/upload")
@limiter.limit(UPLOAD_RATE_LIMIT)
async def upload_image(
    request: Request,
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
):
    """
    Store an uploaded photo and record it.
    The blob is written first; the image row only exists once the blob does.
    """
    logger.info(f"API REQUEST: POST /api/upload - {file.filename} ({file.content_type})")

    # Read at most one byte past the limit; a full read means the file is too large
    data = await file.read(blob_storage.MAX_FILE_SIZE_BYTES + 1)
    try:
        validate_upload(data, file.content_type)
    except UploadValidationError as e:
        logger.warning(f"Upload rejected for user {user_id}: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e))

    if blob_uploader is None:
        raise HTTPException(status_code=500, detail="Storage is not configured")

    content_type = file.content_type.lower()
    path = make_blob_path(UPLOADED_FOLDER, user_id, content_type)
    try:
        url = blob_uploader.put(path, data, content_type)
    except BlobStorageError as e:
        raise HTTPException(status_code=502, detail=str(e))

    image = store.create_image(
        user_id, store.IMAGE_TYPE_UPLOADED, url,
        storage_path=path, content_type=content_type,
    )
    logger.info(f"✓ Image {image.id} uploaded ({len(data)} bytes)")
    return {"url": url, "image": image.to_dict()}


@app.get("/api/images")
async def get_images(type: Optional[str] = None, user_id: str = Depends(get_current_user_id)):
    """List the user's images (uploaded or generated), newest first."""
    if type is not None and type not in store.IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Invalid image type")
    images = store.list_images(user_id, type)
    return {"images": [image.to_dict() for image in images]}


@app.delete("/api/images/{image_id}")
async def delete_image(image_id: str, user_id: str = Depends(get_current_user_id)):
    """Delete an image row and its blob."""
    try:
        image = store.delete_image(image_id, user_id)
    except store.NotFoundError:
        raise HTTPException(status_code=404, detail="Image not found")
    except store.ImageInUseError:
        raise HTTPException(status_code=409, detail="Image belongs to a generated headshot")

    if image.storage_path and blob_uploader is not None:
        try:
            blob_uploader.delete(image.storage_path)
        except BlobStorageError as e:
            logger.error(f"Image {image_id} deleted but blob cleanup failed: {e}")

    return {"success": True}


# ============= GENERATION ROUTES =============

@app.post("/api/generate")
@limiter.limit(GENERATE_RATE_LIMIT)
async def generate_headshot(
    request: Request,
    body: GenerateRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
):
    """
    Start a headshot generation.

    Creates the headshot row and a checkout session, then schedules the
    pipeline in the background (or waits for the payment webhook when
    payment gating is enabled). Returns the checkout redirect URL.
    """
    logger.info("=" * 60)
    logger.info(f"API REQUEST: POST /api/generate - {len(body.image_ids)} image(s)")

    try:
        validate_generation_request(user_id, body.image_ids)
    except GenerationRequestError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_request", "message": str(e)})
    except ImageOwnershipError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "unauthorized_images", "message": str(e), "image_ids": e.image_ids},
        )

    services = get_pipeline_services()
    if services is None:
        raise HTTPException(status_code=500, detail="Headshot generation is not configured")

    user = get_user_by_id(user_id)

    def create_checkout(headshot_id: str) -> str:
        session = create_headshot_checkout(
            dodo_client, DODO_HEADSHOT_PRODUCT_ID, user, headshot_id, PUBLIC_BASE_URL
        )
        record_checkout_session(
            session.checkout_ref, user_id, headshot_id,
            checkout_session_id=session.session_id, checkout_url=session.url,
        )
        return session.url

    try:
        result = request_generation(
            user_id,
            body.image_ids,
            body.preferences.normalized(),
            create_checkout,
            dedupe=DEDUPE_GENERATION_REQUESTS,
            open_checkout=lambda headshot_id: get_open_checkout_url(user_id, headshot_id),
        )
    except (GenerationRequestError, ImageOwnershipError) as e:
        # The images changed between validation and creation
        raise HTTPException(status_code=400, detail={"error": "invalid_request", "message": str(e)})
    except PaymentError as e:
        raise HTTPException(status_code=502, detail={"error": "payment_unavailable", "message": str(e)})
    except Exception:
        logger.exception("Generation request failed")
        raise HTTPException(status_code=500, detail={"error": "internal_error", "message": "Failed to generate headshot"})

    headshot = result.headshot
    if not REQUIRE_PAYMENT_BEFORE_GENERATION and not result.reused:
        background_tasks.add_task(run_generation, headshot.id, user_id, services, GENERATION_TIMEOUT_SECONDS)
        logger.info(f"✓ Headshot {headshot.id} queued")

    return {
        "checkoutUrl": result.checkout_url,
        "headshotId": headshot.id,
        "status": headshot.status,
        "reused": result.reused,
    }


@app.get("/api/headshots")
async def get_headshots(user_id: str = Depends(get_current_user_id)):
    """List the user's headshots, newest first."""
    return {"headshots": [headshot.to_dict() for headshot in store.list_headshots(user_id)]}


@app.get("/api/headshots/{headshot_id}")
async def get_headshot(headshot_id: str, user_id: str = Depends(get_current_user_id)):
    """Poll one headshot's status."""
    try:
        headshot = store.get_headshot_with_generated_image(headshot_id, user_id)
    except store.NotFoundError:
        raise HTTPException(status_code=404, detail="Headshot not found")
    return headshot.to_dict()


# ============= BILLING ROUTES =============

@app.post("/api/billing/webhook")
async def handle_webhook(request: Request, background_tasks: BackgroundTasks):
    """Handle Dodo Payments webhook events."""
    if not dodo_client:
        raise HTTPException(status_code=500, detail="Billing is not configured")

    webhook_id = request.headers.get("webhook-id", "")
    webhook_signature = request.headers.get("webhook-signature", "")
    webhook_timestamp = request.headers.get("webhook-timestamp", "")

    if not webhook_id:
        raise HTTPException(status_code=400, detail="Missing webhook-id")

    if is_webhook_processed(webhook_id):
        return {"received": True}

    raw_body = await request.body()

    try:
        payload = unwrap_webhook(
            dodo_client,
            raw_body,
            headers={
                "webhook-id": webhook_id,
                "webhook-signature": webhook_signature,
                "webhook-timestamp": webhook_timestamp,
            },
        )
    except PaymentError:
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = extract_payment_event(payload)

    if is_payment_succeeded(event) and event.user_id and event.headshot_id:
        try:
            store.mark_headshot_paid(event.headshot_id, event.user_id)
        except store.NotFoundError:
            logger.warning(f"Payment for unknown headshot {event.headshot_id} (user {event.user_id})")
        else:
            mark_payment_succeeded(
                event.user_id, event.headshot_id, event.payment_id,
                checkout_ref=event.checkout_ref,
                checkout_session_id=event.checkout_session_id,
            )
            logger.info(f"Payment successful for headshot {event.headshot_id}")

            if REQUIRE_PAYMENT_BEFORE_GENERATION:
                services = get_pipeline_services()
                if services is None:
                    logger.error(f"Headshot {event.headshot_id} paid but generation is not configured")
                else:
                    background_tasks.add_task(
                        run_generation, event.headshot_id, event.user_id, services, GENERATION_TIMEOUT_SECONDS
                    )

    record_webhook(webhook_id, event.event_type)
    return {"received": True}


# ============= HEALTH =============

@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": "1.0.0",
    }


@app.get("/ready")
async def readiness_check():
    """Readiness check: every external collaborator is configured."""
    checks = {
        "billing": dodo_client is not None,
        "generation": vision_service is not None,
        "storage": blob_uploader is not None,
    }
    return {
        "ready": all(checks.values()),
        "checks": checks,
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
