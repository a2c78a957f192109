import json
import logging
import os
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from siteforge import __version__, backend_codegen, editor, generator, images, llm_client, sharing, usage
from siteforge.auth import Identity, optional_identity
from siteforge.errors import AuthenticationError, InputError, NotFoundError, SiteForgeError
from siteforge.models import TIERS, BackendSpec, ColorScheme, GeneratedWebsite, Section
from siteforge.normalizer import normalize_website
from siteforge.state import GenerationSession
from siteforge.validation import apply_fixes, validate_website

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

app = FastAPI(title="SiteForge", version=__version__)

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


@app.exception_handler(SiteForgeError)
async def siteforge_error_handler(request: Request, exc: SiteForgeError):
    if exc.status_code >= 500:
        log.warning("request failed rid=%s: %s", getattr(request.state, "request_id", None), exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", []) if p != "body") or "body"
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {loc} {first.get('msg', 'invalid')}"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    log.exception("unexpected error rid=%s", getattr(request.state, "request_id", None))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


class GenerateWebsiteRequest(BaseModel):
    prompt: Optional[str] = None
    tier: str = "free"
    color_scheme: Optional[ColorScheme] = Field(default=None, alias="colorScheme")


class GenerateImageRequest(BaseModel):
    prompt: Optional[str] = None


class EditWebsiteRequest(BaseModel):
    section: Optional[Dict[str, Any]] = None
    edit_instructions: Optional[str] = Field(default=None, alias="editInstructions")
    website_id: Optional[str] = Field(default=None, alias="websiteId")


class GenerateBackendRequest(BaseModel):
    backend: Optional[Dict[str, Any]] = None


class ValidateWebsiteRequest(BaseModel):
    website: Dict[str, Any]
    fixes: List[Dict[str, Any]] = Field(default_factory=list)


class SaveWebsiteRequest(BaseModel):
    website: Dict[str, Any]
    prompt: str = ""


class UpdateWebsiteRequest(BaseModel):
    sections: List[Dict[str, Any]]


def _require_identity(identity: Optional[Identity], message: str) -> Identity:
    if identity is None:
        raise AuthenticationError(message)
    return identity


def _subscription_tier(identity: Optional[Identity]) -> Optional[str]:
    """Tier of the caller's subscription row, seeding it from the token when one is declared."""
    if identity is None:
        return None
    gate = usage.get_usage_gate()
    if identity.tier:
        return gate.store.ensure_subscription(identity.user_id, identity.tier).tier
    sub = gate.subscription(identity.user_id)
    return sub.tier if sub is not None else None


def _effective_tier(identity: Optional[Identity], requested: str) -> str:
    if identity is None:
        return "free"
    tier = _subscription_tier(identity)
    if tier is not None:
        return tier
    if requested not in TIERS:
        raise InputError(f"Invalid tier: {requested}")
    return requested


def _require_prompt(prompt: Optional[str]) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise InputError("Prompt is required")
    return prompt.strip()


# Preflight probes for the core operations
@app.options("/generate-website")
@app.options("/generate-image")
@app.options("/edit-website")
@app.options("/generate-backend")
@app.options("/generate/stream")
def preflight() -> Response:
    return Response(status_code=200)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "version": __version__}


@app.get("/llm/status")
def llm_status_endpoint() -> Dict[str, Any]:
    info = llm_client.status()
    info["images"] = {"provider": "replicate", "configured": images.is_configured()}
    return info


@app.get("/llm/probe")
def llm_probe_endpoint() -> Dict[str, Any]:
    return llm_client.probe()


@app.get("/usage")
def usage_endpoint(identity: Optional[Identity] = Depends(optional_identity)) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required")
    _subscription_tier(ident)
    sub = usage.get_usage_gate().subscription(ident.user_id)
    if sub is None:
        return {"tier": None, "metered": False}
    return {
        "tier": sub.tier,
        "metered": True,
        "requestsUsed": sub.requests_used,
        "requestsLimit": sub.requests_limit,
        "requestsRemaining": max(0, sub.requests_limit - sub.requests_used),
        "imagesUsed": sub.images_used,
        "imagesLimit": sub.images_limit,
        "imagesRemaining": max(0, sub.images_limit - sub.images_used),
        "editLimit": usage.edit_limit_for(sub.tier),
    }


@app.post("/generate-website")
def generate_website_endpoint(
    req: GenerateWebsiteRequest,
    identity: Optional[Identity] = Depends(optional_identity),
) -> Dict[str, Any]:
    prompt = _require_prompt(req.prompt)
    tier = _effective_tier(identity, req.tier)
    usage.get_usage_gate().enforce(identity.user_id if identity else None, "requests")
    log.info("generate: user=%s tier=%s prompt_chars=%d", identity.user_id if identity else "anon", tier, len(prompt))
    website = generator.generate_website(prompt, tier, req.color_scheme)
    return {"result": website.to_wire()}


@app.post("/generate-image")
def generate_image_endpoint(
    req: GenerateImageRequest,
    identity: Optional[Identity] = Depends(optional_identity),
) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required for image generation")
    prompt = _require_prompt(req.prompt)
    _subscription_tier(ident)
    usage.get_usage_gate().enforce(ident.user_id, "images")
    return {"image": images.generate_image(prompt)}


@app.post("/edit-website")
def edit_website_endpoint(
    req: EditWebsiteRequest,
    identity: Optional[Identity] = Depends(optional_identity),
) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required for editing")
    if not req.section or not isinstance(req.edit_instructions, str) or not req.edit_instructions.strip():
        raise InputError("Section and edit instructions are required")
    try:
        section = Section.model_validate(req.section)
    except ValidationError as exc:
        raise InputError("Section must include a name and heading") from exc

    repo = sharing.get_repository()
    record = None
    if req.website_id:
        record = repo.get_owned(req.website_id, ident.user_id)
        usage.ensure_can_edit(record.tier, record.edit_count)

    patch = editor.request_section_edit(section, req.edit_instructions)
    body: Dict[str, Any] = {"section": patch}
    if record is not None:
        record = repo.increment_edit_count(record.id, ident.user_id)
        body["editsRemaining"] = usage.remaining_edits(record.tier, record.edit_count)
    return body


@app.post("/generate-backend")
def generate_backend_endpoint(
    req: GenerateBackendRequest,
    identity: Optional[Identity] = Depends(optional_identity),
) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required for backend generation")
    if not req.backend:
        raise InputError("Backend specification is required")
    try:
        spec = BackendSpec.model_validate(req.backend)
    except ValidationError as exc:
        raise InputError("Backend specification is invalid") from exc
    log.info("backend: user=%s features=%s", ident.user_id, spec.features)
    code, source = backend_codegen.synthesize_backend(spec)
    return {"success": True, "code": code.model_dump(by_alias=True), "source": source}


@app.post("/generate/stream")
def generate_stream(
    req: GenerateWebsiteRequest,
    request: Request,
    identity: Optional[Identity] = Depends(optional_identity),
):
    """NDJSON stream: meta, website, one image_progress per illustrated section, then done or error."""
    prompt = _require_prompt(req.prompt)
    tier = _effective_tier(identity, req.tier)
    gate = usage.get_usage_gate()
    user_id = identity.user_id if identity else None
    gate.enforce(user_id, "requests")

    def _image(prompt_text: str) -> str:
        gate.enforce(user_id, "images")
        return images.generate_image(prompt_text)

    session = GenerationSession(image_pipeline=images.ImagePipeline(generate=_image))
    with_images = identity is not None and images.is_configured()

    def _iter() -> Iterable[str]:
        rid = getattr(request.state, "request_id", None)
        for event in session.iter_generate(prompt, tier, req.color_scheme, with_images=with_images):
            if event["event"] == "meta":
                event = dict(event, request_id=rid)
            yield json.dumps(event, ensure_ascii=False) + "\n"

    return StreamingResponse(_iter(), media_type="application/x-ndjson")


@app.post("/validate-website")
def validate_website_endpoint(req: ValidateWebsiteRequest) -> Dict[str, Any]:
    website = normalize_website(req.website)
    result = validate_website(website)
    return {"validation": result.model_dump(), "passed": result.passed, "totalIssues": result.total_issues}


@app.post("/validate-website/fix")
def fix_website_endpoint(req: ValidateWebsiteRequest) -> Dict[str, Any]:
    website = apply_fixes(normalize_website(req.website), req.fixes)
    result = validate_website(website)
    return {
        "website": website.to_wire(),
        "validation": result.model_dump(),
        "passed": result.passed,
        "totalIssues": result.total_issues,
    }


@app.post("/websites")
def save_website_endpoint(
    req: SaveWebsiteRequest,
    identity: Optional[Identity] = Depends(optional_identity),
) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required to save websites")
    try:
        website = GeneratedWebsite.model_validate(req.website)
    except ValidationError as exc:
        raise InputError("Website content is invalid") from exc
    if not website.sections:
        raise InputError("Website must have at least one section")
    tier = _subscription_tier(ident) or "free"
    record = sharing.get_repository().save(ident.user_id, website, prompt=req.prompt, tier=tier)
    return {"id": record.id, "slug": record.slug, "url": sharing.share_url(record.slug)}


@app.get("/websites")
def list_websites_endpoint(identity: Optional[Identity] = Depends(optional_identity)) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required")
    records = sharing.get_repository().list_for_user(ident.user_id)
    return {"websites": [r.owner_view() for r in records]}


@app.get("/websites/{record_id}")
def get_website_endpoint(record_id: str, identity: Optional[Identity] = Depends(optional_identity)) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required")
    return sharing.get_repository().get_owned(record_id, ident.user_id).owner_view()


@app.put("/websites/{record_id}")
def update_website_endpoint(
    record_id: str,
    req: UpdateWebsiteRequest,
    identity: Optional[Identity] = Depends(optional_identity),
) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required")
    if not req.sections:
        raise InputError("Website must have at least one section")
    try:
        sections = [Section.model_validate(s) for s in req.sections]
    except ValidationError as exc:
        raise InputError("Sections must include a name and heading") from exc
    record = sharing.get_repository().update_sections(record_id, ident.user_id, sections)
    return record.owner_view()


@app.delete("/websites/{record_id}")
def delete_website_endpoint(record_id: str, identity: Optional[Identity] = Depends(optional_identity)) -> Dict[str, Any]:
    ident = _require_identity(identity, "Authentication required")
    sharing.get_repository().delete(record_id, ident.user_id)
    return {"deleted": True}


@app.get("/site/{slug}")
def shared_site_endpoint(slug: str) -> Dict[str, Any]:
    record = sharing.get_repository().get_by_slug(slug)
    if record is None:
        raise NotFoundError("Website not found")
    return record.public_view()
