from __future__ import annotations

import json
from typing import Any, Dict, Optional

from siteforge.models import BackendSpec, ColorScheme, Section

WEBSITE_SYSTEM_PROMPT = """You are SiteForge AI, a website content generator.

Generate COMPLETE website content as JSON. Return ONLY valid JSON, without markdown, code blocks or explanations.

REQUIRED JSON SCHEMA:
{
  "websiteType": "saas" | "ecommerce" | "portfolio" | "agency" | "blog" | "landing",
  "targetAudience": "description of target users",
  "sections": [
    {
      "name": "Hero" | "Features" | "Pricing" | "Testimonials" | "CTA" | "About" | "Contact" | "FAQ",
      "heading": "compelling headline text",
      "content": "supporting paragraph text (2-4 sentences)",
      "cta": "button text" | null,
      "ctaAction": "scroll" | "link" | "modal" | "form" | null,
      "ctaTarget": "#section-id" | "https://url" | null,
      "imagePrompt": "detailed image description for AI generation",
      "hasForm": true | false,
      "formType": "contact" | "newsletter" | "signup" | null
    }
  ],
  "navigation": [
    {"label": "Menu Item Text", "target": "#section-id", "type": "scroll" | "link" | "button"}
  ],
  "suggestedPrompts": ["follow-up prompt 1", "follow-up prompt 2"],
  "backend": null | {
    "features": ["contact_form", "newsletter"],
    "authConfig": {"enabled": false, "providers": ["email"], "requireEmailVerification": false,
                   "allowSignup": true, "redirectAfterLogin": "/", "userProfileFields": [], "roles": []},
    "database": {"tables": [{"name": "table_name", "description": "...", "rlsPolicy": "user_owned" | "public_read" | "authenticated_only" | "admin_only",
                             "columns": [{"name": "id", "type": "uuid", "nullable": false, "description": "..."}]}]},
    "forms": [{"id": "contact", "name": "Contact", "targetTable": "table_name", "hasValidation": true,
               "validationRules": ["email"], "submitButton": "Send", "successMessage": "Thanks!",
               "fields": [{"name": "email", "label": "Email", "type": "email", "required": true}]}],
    "apiEndpoints": [{"name": "submit-contact", "method": "POST", "path": "/api/contact/submit", "description": "...", "requiresAuth": false}]
  },
  "internalExplanation": {
    "websiteType": "why this type was chosen",
    "audience": "target audience analysis",
    "sectionRationale": "why these sections were included",
    "copyStrategy": "approach to headlines and copy",
    "conversionGoal": "primary conversion objective",
    "tierImpact": "how tier affected generation"
  }
}

RULES:
1. Start response with { and end with }
2. Generate the number of sections requested by the tier instruction
3. Every section MUST have: name, heading, content, imagePrompt
4. Headlines should be benefit-driven and compelling
5. Content should be realistic, not placeholder text
6. imagePrompt should describe professional website imagery
7. Include navigation items matching sections
8. Include 2-3 suggestedPrompts for follow-up modifications
9. Only include backend when the business needs forms, accounts or stored data"""

EDIT_SYSTEM_PROMPT = """You are SiteForge AI, an expert website content editor.

Your job is to edit existing website section content based on user instructions.

You will receive:
1. The current section content (name, heading, content, cta, imagePrompt)
2. Edit instructions from the user

You must return a JSON response with this exact structure:
{
  "name": "section name (keep same or improve)",
  "heading": "updated heading",
  "content": "updated content",
  "cta": "updated call-to-action (optional, can be null)",
  "imagePrompt": "updated image prompt if visual changes are requested, otherwise keep the same"
}

EDITING PRINCIPLES:
- Maintain brand voice consistency
- Keep the core message unless explicitly asked to change it
- Change only what the instructions ask for
- If asked to make it "shorter", actually make it shorter
- If asked to make it "more engaging", add power words and emotion
- If asked for a different tone, completely shift the voice

IMPORTANT: Return ONLY valid JSON, no markdown, no code blocks, no explanation text outside the JSON."""

BACKEND_SYSTEM_PROMPT = """You are an expert full-stack developer specializing in Supabase, React, and TypeScript. Generate production-ready code based on the provided backend specification.

Your task is to generate complete, deployable code including:
1. SQL schema with proper RLS policies
2. React form components with validation
3. Supabase Edge Functions for API endpoints
4. Authentication setup if required

CRITICAL RULES:
- Generate COMPLETE, WORKING code - no placeholders
- Use proper TypeScript types
- Include comprehensive error handling
- Add input validation for all forms
- Implement proper RLS policies based on the spec
- Make forms accessible and responsive

Return ONLY valid JSON in this exact format:
{
  "sql": "complete SQL schema with RLS policies",
  "forms": [{"id": "form_id", "name": "Form Name", "code": "complete React component code", "filename": "ComponentName.tsx"}],
  "edgeFunctions": [{"name": "function-name", "path": "/api/path", "code": "complete edge function code", "filename": "function-name/index.ts"}],
  "authSetup": {"loginComponent": "...", "signupComponent": "...", "authContext": "..."}
}

IMPORTANT: Return ONLY the JSON object, no markdown, no code blocks, no explanation."""

TIER_CONTEXT: Dict[str, str] = {
    "free": "Generate 3-4 sections for a basic landing page. Include Hero, Features, and CTA sections.",
    "pro": (
        "Generate 5-6 sections for a professional website. "
        "Include Hero, Features, Pricing, Testimonials, and CTA sections."
    ),
    "business": "Generate 6-7 sections for a premium enterprise website with full features.",
}


def tier_context(tier: str) -> str:
    return TIER_CONTEXT.get(tier, TIER_CONTEXT["business"])


def color_context(color_scheme: Optional[ColorScheme]) -> str:
    if color_scheme is None:
        return ""
    return (
        "Use this color scheme in your imagePrompts: "
        f"Primary {color_scheme.primary}, Secondary {color_scheme.secondary}, Accent {color_scheme.accent}."
    )


def build_website_prompt(prompt: str, tier_ctx: str, color_ctx: str) -> str:
    return f"{tier_ctx}\n{color_ctx}\n\nUser request: {prompt}\n\nGenerate the complete website JSON now."


def build_edit_prompt(section: Section, instructions: str) -> str:
    return (
        "Current section content:\n"
        f"- Name: {section.name}\n"
        f"- Heading: {section.heading}\n"
        f"- Content: {section.content}\n"
        f"- CTA: {section.cta or 'None'}\n"
        f"- CTA Action: {section.cta_action or 'None'}\n"
        f"- CTA Target: {section.cta_target or 'None'}\n"
        f"- Image Prompt: {section.image_prompt or 'None'}\n\n"
        f"Edit instructions: {instructions}"
    )


def build_backend_prompt(spec: BackendSpec) -> str:
    serialized: Any = json.dumps(spec.to_wire(), ensure_ascii=False, indent=2)
    return (
        "Generate complete backend code for this specification:\n\n"
        f"{serialized}\n\n"
        "Requirements:\n"
        "- SQL must include CREATE TABLE statements with proper types\n"
        "- RLS policies must match the rlsPolicy field (user_owned, public_read, authenticated_only, admin_only)\n"
        "- Forms must use shadcn/ui components and include validation\n"
        "- Edge functions must handle CORS and errors properly\n"
        "- If authConfig.enabled is true, generate complete auth components\n\n"
        "Generate production-ready code now."
    )
