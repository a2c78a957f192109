"""Backend code synthesis: model path first, deterministic templates as the fallback.

``synthesize_backend`` never fails for a well-formed :class:`BackendSpec`.
The model path is validated against ``schemas/generated_code.schema.json``;
anything it gets wrong drops through to the template path, which renders
SQL directly and TypeScript through the Jinja templates in ``templates/``.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape
from jsonschema import Draft202012Validator

from siteforge import llm_client
from siteforge.llm_parsing import extract_json_object
from siteforge.llm_prompts import BACKEND_SYSTEM_PROMPT, build_backend_prompt
from siteforge.models import (
    ApiEndpointSpec,
    AuthConfig,
    AuthSetup,
    BackendSpec,
    EdgeFunctionArtifact,
    FormArtifact,
    FormSpec,
    GeneratedCode,
    TableSpec,
)

log = logging.getLogger(__name__)

_PACKAGE_DIR = Path(__file__).resolve().parent

# [[ ]] / [% %] keep Jinja clear of JSX braces
_env = Environment(
    loader=FileSystemLoader(str(_PACKAGE_DIR / "templates")),
    autoescape=select_autoescape(["html", "xml"]),
    variable_start_string="[[",
    variable_end_string="]]",
    block_start_string="[%",
    block_end_string="%]",
    comment_start_string="[#",
    comment_end_string="#]",
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)

_schema_validator: Optional[Draft202012Validator] = None

TYPE_MAP: Dict[str, str] = {
    "uuid": "UUID",
    "text": "TEXT",
    "timestamp": "TIMESTAMP WITH TIME ZONE",
    "boolean": "BOOLEAN",
    "integer": "INTEGER",
    "jsonb": "JSONB",
}

INPUT_TYPES = {"email": "email", "tel": "tel", "password": "password"}

_IDENT_RE = re.compile(r"[^A-Za-z0-9_]+")
# VARCHAR(255), NUMERIC(10, 2), TEXT[] and the like
_SQL_TYPE_RE = re.compile(r"^[A-Z][A-Z0-9_ ]*(\(\d+(, ?\d+)?\))?(\[\])?$")
_FILENAME_RE = re.compile(r"[^A-Za-z0-9_-]+")


def _ident(name: str, fallback: str = "field") -> str:
    """Reduce ``name`` to a safe SQL/JS identifier."""
    s = _IDENT_RE.sub("_", (name or "").strip()).strip("_")
    if not s:
        return fallback
    if s[0].isdigit():
        s = f"_{s}"
    return s


def to_pascal_case(text: str) -> str:
    words = re.split(r"[-_\s]+", text or "")
    joined = "".join(w[:1].upper() + w[1:].lower() for w in words if w)
    joined = _IDENT_RE.sub("", joined)
    if not joined or joined[0].isdigit():
        joined = f"Custom{joined}"
    return joined


def _humanize(name: str) -> str:
    return " ".join(w.capitalize() for w in re.split(r"[-_\s]+", name or "") if w) or name


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------


def sql_type(raw: str) -> str:
    key = (raw or "").strip().lower()
    if key in TYPE_MAP:
        return TYPE_MAP[key]
    candidate = " ".join((raw or "").split()).upper()
    if _SQL_TYPE_RE.match(candidate):
        return candidate
    log.info("codegen: unsupported column type %r, using TEXT", raw)
    return "TEXT"


def _column_def(name: str, ctype: str, nullable: bool) -> str:
    col = f"  {name} {ctype}"
    if name == "id":
        col += " NOT NULL DEFAULT gen_random_uuid() PRIMARY KEY"
    elif name in ("created_at", "updated_at"):
        col += " NOT NULL DEFAULT now()"
    elif name == "user_id":
        col += " REFERENCES auth.users(id) ON DELETE CASCADE"
        if not nullable:
            col += " NOT NULL"
    elif not nullable:
        col += " NOT NULL"
    return col


def _table_columns(table: TableSpec) -> List[Tuple[str, str, bool]]:
    columns: List[Tuple[str, str, bool]] = []
    seen = set()
    for column in table.columns:
        name = _ident(column.name, "column")
        if name in seen:
            continue
        seen.add(name)
        columns.append((name, sql_type(column.type), column.nullable))
    if not columns:
        columns.append(("id", "UUID", False))
    if _policy_kind(table) == "user_owned" and "user_id" not in seen:
        # owner policies are keyed on user_id
        log.info("codegen: adding user_id to user_owned table %s", table.name)
        columns.append(("user_id", "UUID", False))
    return columns


def _policy_kind(table: TableSpec) -> str:
    return table.rls_policy or "public_read"


def rls_policies(table_name: str, kind: str) -> List[str]:
    """CREATE POLICY statements for one table and policy kind."""
    t = f"public.{table_name}"
    if kind == "user_owned":
        return [
            f'CREATE POLICY "Users can view own {table_name}" ON {t}\n  FOR SELECT USING (auth.uid() = user_id);',
            f'CREATE POLICY "Users can insert own {table_name}" ON {t}\n  FOR INSERT WITH CHECK (auth.uid() = user_id);',
            f'CREATE POLICY "Users can update own {table_name}" ON {t}\n  FOR UPDATE USING (auth.uid() = user_id);',
            f'CREATE POLICY "Users can delete own {table_name}" ON {t}\n  FOR DELETE USING (auth.uid() = user_id);',
        ]
    if kind == "authenticated_only":
        return [
            f'CREATE POLICY "Authenticated users can view {table_name}" ON {t}\n  FOR SELECT TO authenticated USING (true);',
            f'CREATE POLICY "Authenticated users can insert {table_name}" ON {t}\n  FOR INSERT TO authenticated WITH CHECK (true);',
        ]
    if kind == "admin_only":
        return [
            f'CREATE POLICY "Admins can manage {table_name}" ON {t}\n  FOR ALL USING (public.has_role(auth.uid(), \'admin\'));',
        ]
    return [
        f'CREATE POLICY "Anyone can view {table_name}" ON {t}\n  FOR SELECT USING (true);',
        f'CREATE POLICY "Authenticated can insert {table_name}" ON {t}\n  FOR INSERT TO authenticated WITH CHECK (true);',
    ]


_POLICY_COMMENTS = {
    "user_owned": "-- Users can only access their own data",
    "authenticated_only": "-- Only authenticated users can access",
    "admin_only": "-- Only admins can access",
    "public_read": "-- Public read, authenticated write",
}

_ROLE_HELPER_SQL = """-- Role lookup used by admin-only policies
CREATE TABLE IF NOT EXISTS public.user_roles (
  id UUID NOT NULL DEFAULT gen_random_uuid() PRIMARY KEY,
  user_id UUID REFERENCES auth.users(id) ON DELETE CASCADE NOT NULL,
  role TEXT NOT NULL,
  UNIQUE (user_id, role)
);

ALTER TABLE public.user_roles ENABLE ROW LEVEL SECURITY;

CREATE OR REPLACE FUNCTION public.has_role(_user_id UUID, _role TEXT)
RETURNS BOOLEAN
LANGUAGE sql
STABLE
SECURITY DEFINER
SET search_path = public
AS $$
  SELECT EXISTS (SELECT 1 FROM public.user_roles WHERE user_id = _user_id AND role = _role)
$$;

"""

_UPDATED_AT_FUNCTION_SQL = """-- Function to update updated_at timestamp
CREATE OR REPLACE FUNCTION public.update_updated_at_column()
RETURNS TRIGGER AS $$
BEGIN
  NEW.updated_at = now();
  RETURN NEW;
END;
$$ LANGUAGE plpgsql SET search_path = public;

"""


def generate_sql(spec: BackendSpec) -> str:
    parts: List[str] = ["-- Generated Backend Schema\n\n"]
    tables = spec.database.tables
    if any(t.has_rls is not False and _policy_kind(t) == "admin_only" for t in tables):
        parts.append(_ROLE_HELPER_SQL)

    with_updated_at: List[str] = []
    for table in tables:
        name = _ident(table.name, "records")
        columns = _table_columns(table)
        if table.description:
            parts.append(f"-- {' '.join(table.description.split())}\n")
        parts.append(f"CREATE TABLE IF NOT EXISTS public.{name} (\n")
        parts.append(",\n".join(_column_def(c, t, n) for c, t, n in columns))
        parts.append("\n);\n\n")
        if any(c == "updated_at" for c, _, _ in columns):
            with_updated_at.append(name)

        if table.has_rls is False:
            continue
        kind = _policy_kind(table)
        parts.append("-- Enable Row Level Security\n")
        parts.append(f"ALTER TABLE public.{name} ENABLE ROW LEVEL SECURITY;\n\n")
        parts.append(_POLICY_COMMENTS.get(kind, _POLICY_COMMENTS["public_read"]) + "\n")
        for policy in rls_policies(name, kind):
            parts.append(policy + "\n\n")

    if with_updated_at:
        parts.append(_UPDATED_AT_FUNCTION_SQL)
        for name in with_updated_at:
            parts.append(
                f"CREATE TRIGGER update_{name}_updated_at\n"
                f"  BEFORE UPDATE ON public.{name}\n"
                "  FOR EACH ROW EXECUTE FUNCTION public.update_updated_at_column();\n\n"
            )
    return "".join(parts)


# ---------------------------------------------------------------------------
# TypeScript artifacts
# ---------------------------------------------------------------------------


def _form_fields(form: FormSpec) -> List[Dict[str, Any]]:
    fields: List[Dict[str, Any]] = []
    seen = set()
    for field in form.fields:
        name = _ident(field.name)
        if name in seen:
            continue
        seen.add(name)
        ftype = (field.type or "text").lower()
        label = field.label or _humanize(field.name)
        fields.append(
            {
                "name": name,
                "type": ftype,
                "input_type": INPUT_TYPES.get(ftype, "text"),
                "label": label,
                "display_label": f"{label} *" if field.required else label,
                "required": bool(field.required),
                "placeholder": field.placeholder,
                "options": [str(o) for o in (field.options or [])],
            }
        )
    return fields


def form_component_name(form: FormSpec) -> str:
    return f"{to_pascal_case(form.id)}Form"


def generate_form_component(form: FormSpec) -> str:
    validation = bool(form.has_validation and form.validation_rules)
    return _env.get_template("form_component.tsx.j2").render(
        component=form_component_name(form),
        fields=_form_fields(form),
        validation=validation,
        target_table=_ident(form.target_table, "submissions"),
        success_message=form.success_message,
        submit_button=form.submit_button,
    )


def _related_form(endpoint: ApiEndpointSpec, spec: BackendSpec) -> Optional[FormSpec]:
    for form in spec.forms:
        if form.id and (form.id in endpoint.path or form.id in endpoint.name):
            return form
    return None


def is_form_handler(endpoint: ApiEndpointSpec, spec: BackendSpec) -> bool:
    path = endpoint.path.lower()
    return "submit" in path or "form" in path or _related_form(endpoint, spec) is not None


def generate_edge_function(endpoint: ApiEndpointSpec, spec: BackendSpec) -> str:
    if is_form_handler(endpoint, spec):
        form = _related_form(endpoint, spec)
        table = _ident(form.target_table, "submissions") if form else "submissions"
        required = [_ident(f.name) for f in form.fields if f.required] if form else []
        return _env.get_template("edge_form_handler.ts.j2").render(
            name=endpoint.name,
            table=table,
            required_fields=required,
        )
    return _env.get_template("edge_endpoint.ts.j2").render(
        name=endpoint.name,
        method=(endpoint.method or "POST").upper(),
        requires_auth=bool(endpoint.requires_auth),
    )


def edge_function_filename(endpoint: ApiEndpointSpec) -> str:
    slug = _FILENAME_RE.sub("-", endpoint.name).strip("-") or "endpoint"
    return f"{slug}/index.ts"


def _profile_fields(auth: AuthConfig) -> List[Dict[str, str]]:
    fields: List[Dict[str, str]] = []
    for raw in auth.user_profile_fields:
        # "name" is stored as full_name in user metadata
        key = "full_name" if raw == "name" else _ident(raw)
        if key in (f["name"] for f in fields):
            continue
        fields.append({"name": key, "label": _humanize(key)})
    return fields


def generate_auth_components(auth: Optional[AuthConfig]) -> Optional[AuthSetup]:
    if auth is None or not auth.enabled:
        return None
    login = _env.get_template("login_form.tsx.j2").render(
        redirect=auth.redirect_after_login or "/",
        allow_signup=auth.allow_signup,
    )
    signup = None
    if auth.allow_signup:
        message = (
            "Check your email to confirm your account!"
            if auth.require_email_verification
            else "Account created successfully!"
        )
        signup = _env.get_template("signup_form.tsx.j2").render(
            profile_fields=_profile_fields(auth),
            success_message=message,
        )
    return AuthSetup(login_component=login, signup_component=signup, auth_context=None)


def generate_from_templates(spec: BackendSpec) -> GeneratedCode:
    return GeneratedCode(
        sql=generate_sql(spec),
        forms=[
            FormArtifact(
                id=form.id,
                name=form.name,
                code=generate_form_component(form),
                filename=f"{form_component_name(form)}.tsx",
            )
            for form in spec.forms
        ],
        edge_functions=[
            EdgeFunctionArtifact(
                name=endpoint.name,
                path=endpoint.path,
                code=generate_edge_function(endpoint, spec),
                filename=edge_function_filename(endpoint),
            )
            for endpoint in spec.api_endpoints
        ],
        auth_setup=generate_auth_components(spec.auth_config),
    )


# ---------------------------------------------------------------------------
# Model path
# ---------------------------------------------------------------------------


def _validator() -> Draft202012Validator:
    global _schema_validator
    if _schema_validator is None:
        schema = json.loads((_PACKAGE_DIR / "schemas" / "generated_code.schema.json").read_text(encoding="utf-8"))
        _schema_validator = Draft202012Validator(schema)
    return _schema_validator


def schema_errors(payload: Any) -> List[str]:
    errors: List[str] = []
    for err in _validator().iter_errors(payload):
        loc = ".".join(str(p) for p in err.path) or "(root)"
        errors.append(f"{loc}: {err.message}")
    return errors


def _default_invoke(system_prompt: str, user_prompt: str) -> str:
    return llm_client.chat_completion(system_prompt, user_prompt, max_tokens=8000, prefer="openrouter")


def request_ai_code(spec: BackendSpec, *, invoke: Optional[Callable[[str, str], str]] = None) -> GeneratedCode:
    call = invoke or _default_invoke
    payload = extract_json_object(call(BACKEND_SYSTEM_PROMPT, build_backend_prompt(spec)))
    problems = schema_errors(payload)
    if problems:
        raise ValueError(f"Generated code failed schema check: {problems[0]}")
    return GeneratedCode.model_validate(payload)


def synthesize_backend(
    spec: BackendSpec,
    *,
    invoke: Optional[Callable[[str, str], str]] = None,
) -> Tuple[GeneratedCode, str]:
    """Return ``(code, source)`` where source is ``"ai"`` or ``"template"``."""
    try:
        code = request_ai_code(spec, invoke=invoke)
        log.info("codegen: using model output (forms=%d functions=%d)", len(code.forms), len(code.edge_functions))
        return code, "ai"
    except Exception as exc:
        log.warning("codegen: model path unavailable, using templates: %s", getattr(exc, "message", None) or exc)
    return generate_from_templates(spec), "template"
