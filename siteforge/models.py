from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

WEBSITE_TYPES = ("saas", "ecommerce", "portfolio", "agency", "blog", "landing")
TIERS = ("free", "pro", "business")
RLS_POLICIES = ("user_owned", "authenticated_only", "admin_only", "public_read")

EXPLANATION_KEYS = (
    "websiteType",
    "audience",
    "sectionRationale",
    "copyStrategy",
    "conversionGoal",
    "tierImpact",
)


class WireModel(BaseModel):
    """Base for payloads exchanged with the model and the browser (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Section(WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    name: str
    heading: str
    content: str = ""
    cta: Optional[str] = None
    cta_action: Optional[str] = Field(default=None, alias="ctaAction")
    cta_target: Optional[str] = Field(default=None, alias="ctaTarget")
    image_prompt: Optional[str] = Field(default=None, alias="imagePrompt")
    generated_image: Optional[str] = Field(default=None, alias="generatedImage")
    has_form: Optional[bool] = Field(default=None, alias="hasForm")
    form_type: Optional[str] = Field(default=None, alias="formType")


class NavigationItem(WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    label: str
    target: str
    type: str = "scroll"


class ColumnSpec(WireModel):
    name: str
    type: str = "text"
    nullable: bool = True
    description: str = ""


class TableSpec(WireModel):
    name: str
    description: str = ""
    columns: List[ColumnSpec] = Field(default_factory=list)
    has_rls: Optional[bool] = Field(default=None, alias="hasRLS")
    rls_policy: Optional[str] = Field(default=None, alias="rlsPolicy")


class DatabaseSpec(WireModel):
    tables: List[TableSpec]


class FormField(WireModel):
    name: str
    label: str = ""
    type: str = "text"
    required: bool = False
    placeholder: Optional[str] = None
    options: Optional[List[str]] = None


class FormSpec(WireModel):
    id: str
    name: str = ""
    description: str = ""
    target_table: str = Field(default="submissions", alias="targetTable")
    fields: List[FormField] = Field(default_factory=list)
    submit_button: str = Field(default="Submit", alias="submitButton")
    success_message: str = Field(default="Thanks! Your submission was received.", alias="successMessage")
    requires_auth: Optional[bool] = Field(default=None, alias="requiresAuth")
    has_validation: Optional[bool] = Field(default=None, alias="hasValidation")
    validation_rules: Optional[List[str]] = Field(default=None, alias="validationRules")


class ApiEndpointSpec(WireModel):
    name: str
    method: str = "POST"
    path: str
    description: str = ""
    requires_auth: bool = Field(default=False, alias="requiresAuth")
    has_rate_limit: Optional[bool] = Field(default=None, alias="hasRateLimit")


class EmailNotification(WireModel):
    trigger: str
    recipient: str
    subject: str
    description: str = ""


class AuthConfig(WireModel):
    enabled: bool = False
    providers: List[str] = Field(default_factory=lambda: ["email"])
    require_email_verification: bool = Field(default=False, alias="requireEmailVerification")
    allow_signup: bool = Field(default=True, alias="allowSignup")
    redirect_after_login: str = Field(default="/", alias="redirectAfterLogin")
    user_profile_fields: List[str] = Field(default_factory=list, alias="userProfileFields")
    roles: List[str] = Field(default_factory=list)


class BackendSpec(WireModel):
    features: List[str] = Field(default_factory=list)
    has_auth: Optional[bool] = Field(default=None, alias="hasAuth")
    auth_config: Optional[AuthConfig] = Field(default=None, alias="authConfig")
    database: DatabaseSpec
    forms: List[FormSpec] = Field(default_factory=list)
    api_endpoints: List[ApiEndpointSpec] = Field(default_factory=list, alias="apiEndpoints")
    email_notifications: Optional[List[EmailNotification]] = Field(default=None, alias="emailNotifications")


class GeneratedWebsite(WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    website_type: str = Field(default="landing", alias="websiteType")
    target_audience: str = Field(default="", alias="targetAudience")
    sections: List[Section]
    navigation: List[NavigationItem] = Field(default_factory=list)
    suggested_prompts: List[str] = Field(default_factory=list, alias="suggestedPrompts")
    backend: Optional[BackendSpec] = None
    internal_explanation: Dict[str, Any] = Field(default_factory=dict, alias="internalExplanation")


class ValidationCategory(WireModel):
    passed: bool = True
    issues: List[str] = Field(default_factory=list)
    fixes: List[Dict[str, Any]] = Field(default_factory=list)


class ValidationResult(WireModel):
    navigation: ValidationCategory = Field(default_factory=ValidationCategory)
    buttons: ValidationCategory = Field(default_factory=ValidationCategory)
    security: ValidationCategory = Field(default_factory=ValidationCategory)
    forms: ValidationCategory = Field(default_factory=ValidationCategory)

    @property
    def passed(self) -> bool:
        return all(cat.passed for cat in (self.navigation, self.buttons, self.security, self.forms))

    @property
    def total_issues(self) -> int:
        return sum(len(cat.issues) for cat in (self.navigation, self.buttons, self.security, self.forms))


class FormArtifact(WireModel):
    id: str
    name: str = ""
    code: str
    filename: str


class EdgeFunctionArtifact(WireModel):
    name: str
    path: str = ""
    code: str
    filename: str


class AuthSetup(WireModel):
    login_component: Optional[str] = Field(default=None, alias="loginComponent")
    signup_component: Optional[str] = Field(default=None, alias="signupComponent")
    auth_context: Optional[str] = Field(default=None, alias="authContext")


class GeneratedCode(WireModel):
    sql: str
    forms: List[FormArtifact] = Field(default_factory=list)
    edge_functions: List[EdgeFunctionArtifact] = Field(default_factory=list, alias="edgeFunctions")
    auth_setup: Optional[AuthSetup] = Field(default=None, alias="authSetup")


class ColorScheme(WireModel):
    name: Optional[str] = None
    primary: str
    secondary: str
    accent: str


class ImageProgress(WireModel):
    model_config = ConfigDict(frozen=True)

    current: int = 0
    total: int = 0


class Subscription(WireModel):
    tier: str = "free"
    requests_used: int = 0
    requests_limit: int = 0
    images_used: int = 0
    images_limit: int = 0

    def used(self, kind: str) -> int:
        return int(getattr(self, f"{kind}_used"))

    def limit(self, kind: str) -> int:
        return int(getattr(self, f"{kind}_limit"))
