"""
Bilingual SMS template store.

Templates are keyed by (template_key, language). An organization may override
any system template; built-in defaults back every key a workflow needs so a
required key always resolves to something, in the worst case in English.
"""
import re
from typing import Any, Dict, List, Optional, Tuple

from serviceai.config import settings
from serviceai.models import (
    Language,
    RenderResult,
    Template,
    TemplateCategory,
    TemplateDraft,
    TemplateUpdate,
    TemplateValidation,
    utcnow,
)
from serviceai.persistence import Persistence
from serviceai.utils.errors import ContentError, MissingVariable, NotFoundError, TemplateNotFound
from serviceai.utils.logging import logger

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def _builtin(key: str, category: TemplateCategory, en: str, es: str) -> List[Template]:
    return [
        Template(
            id=f"system:{key}:{language.value}",
            organization_id=None,
            key=key,
            language=language,
            content=content,
            variables=extract_placeholders(content),
            category=category,
        )
        for language, content in ((Language.EN, en), (Language.ES, es))
    ]


def extract_placeholders(content: str) -> List[str]:
    """Placeholder names in order of first appearance"""
    seen: List[str] = []
    for name in PLACEHOLDER.findall(content or ""):
        if name not in seen:
            seen.append(name)
    return seen


def interpolate(content: str, variables: Dict[str, Any]) -> str:
    return PLACEHOLDER.sub(lambda m: str(variables[m.group(1)]), content)


DEFAULT_TEMPLATES: Dict[Tuple[str, Language], Template] = {
    (t.key, t.language): t
    for t in (
        _builtin(
            "appointment_confirmation",
            TemplateCategory.CONFIRMATION,
            "Hi {{customer_name}}! Your {{service_type}} appointment is confirmed for {{date}} at {{time}}. "
            "Address: {{address}}. We'll call 30 minutes before arrival. Reply STOP to opt out.",
            "¡Hola {{customer_name}}! Su cita de {{service_type}} está confirmada para el {{date}} a las {{time}}. "
            "Dirección: {{address}}. Llamaremos 30 minutos antes de llegar. Responda STOP para cancelar.",
        )
        + _builtin(
            "appointment_reminder",
            TemplateCategory.REMINDER,
            "Reminder: Your {{service_type}} appointment is on {{date}} at {{time}}. Address: {{address}}. "
            "Reply YES to confirm or call {{business_phone}} to reschedule.",
            "Recordatorio: Su cita de {{service_type}} es el {{date}} a las {{time}}. Dirección: {{address}}. "
            "Responda SÍ para confirmar o llame al {{business_phone}} para reagendar.",
        )
        + _builtin(
            "emergency_alert",
            TemplateCategory.EMERGENCY,
            "EMERGENCY ALERT: {{customer_name}} reported: {{issue_description}}. Address: {{address}}. "
            "Phone: {{customer_phone}}. Urgency: {{urgency_level}}. Please respond immediately.",
            "ALERTA DE EMERGENCIA: {{customer_name}} reportó: {{issue_description}}. Dirección: {{address}}. "
            "Teléfono: {{customer_phone}}. Urgencia: {{urgency_level}}. Responda inmediatamente.",
        )
        + _builtin(
            "emergency_received",
            TemplateCategory.EMERGENCY,
            "{{business_name}} received your emergency request. A technician has been notified and will "
            "contact you shortly. If you are in danger, call 911.",
            "{{business_name}} recibió su solicitud de emergencia. Un técnico ha sido notificado y se "
            "comunicará con usted pronto. Si está en peligro, llame al 911.",
        )
        + _builtin(
            "service_completion",
            TemplateCategory.FOLLOW_UP,
            "Thank you for choosing {{business_name}}! How was your service today? Rate us 1-5 by replying "
            "with a number. For issues, call {{business_phone}}.",
            "¡Gracias por elegir {{business_name}}! ¿Cómo fue su servicio hoy? Califíquenos de 1 a 5 "
            "respondiendo con un número. Para problemas, llame al {{business_phone}}.",
        )
        + _builtin(
            "survey_request",
            TemplateCategory.SURVEY,
            "Hi {{customer_name}}, {{business_name}} would love your feedback. On a scale of 1-5, how likely "
            "are you to recommend us? Reply with a number.",
            "Hola {{customer_name}}, a {{business_name}} le encantaría su opinión. Del 1 al 5, ¿qué tan "
            "probable es que nos recomiende? Responda con un número.",
        )
        + _builtin(
            "appointment_cancelled",
            TemplateCategory.APPOINTMENT,
            "Your {{service_type}} appointment for {{date}} at {{time}} has been cancelled. To reschedule, "
            "call {{business_phone}}.",
            "Su cita de {{service_type}} para el {{date}} a las {{time}} ha sido cancelada. Para reagendar, "
            "llame al {{business_phone}}.",
        )
        + _builtin(
            "no_show_followup",
            TemplateCategory.FOLLOW_UP,
            "We missed you at your {{service_type}} appointment today. Please call {{business_phone}} to "
            "reschedule. We're here to help!",
            "Lo extrañamos en su cita de {{service_type}} hoy. Por favor llame al {{business_phone}} para "
            "reagendar. ¡Estamos aquí para ayudar!",
        )
        + _builtin(
            "welcome_message",
            TemplateCategory.CONFIRMATION,
            "Welcome to {{business_name}}! For appointments, call {{business_phone}}. Reply STOP to opt out.",
            "¡Bienvenido a {{business_name}}! Para citas, llame al {{business_phone}}. Responda STOP para cancelar.",
        )
    )
}


class TemplateStore:
    def __init__(self, persistence: Persistence, default_language: Optional[str] = None):
        self.persistence = persistence
        self.default_language = Language(default_language or settings.default_language)

    async def _lookup(
        self, organization_id: Optional[str], key: str, language: Language
    ) -> Optional[Template]:
        if organization_id:
            override = await self.persistence.get_template(organization_id, key, language)
            if override and override.is_active:
                return override
        system = await self.persistence.get_template(None, key, language)
        if system and system.is_active:
            return system
        return DEFAULT_TEMPLATES.get((key, language))

    async def _organization_language(self, organization_id: Optional[str]) -> Language:
        if organization_id:
            org = await self.persistence.get_organization(organization_id)
            if org:
                return org.default_language
        return self.default_language

    async def resolve(
        self,
        organization_id: Optional[str],
        key: str,
        language: Language,
        default_language: Optional[Language] = None
    ) -> Tuple[Template, bool]:
        """
        Find the active template for (key, language), falling back to the
        organization's default language and then the system default.
        Returns (template, fallback). Raises TemplateNotFound.
        """
        requested = Language(language)
        org_language = default_language or await self._organization_language(organization_id)

        candidates: List[Language] = []
        for lang in (requested, org_language, self.default_language, Language.EN):
            if lang not in candidates:
                candidates.append(lang)

        for lang in candidates:
            template = await self._lookup(organization_id, key, lang)
            if template:
                fallback = lang != requested
                if fallback:
                    logger.info(f"🌐 Template {key} missing in {requested.value}, falling back to {lang.value}")
                return template, fallback

        raise TemplateNotFound(
            f"Template {key} not found",
            details={"template_key": key, "language": requested.value}
        )

    async def get_template(
        self, organization_id: Optional[str], key: str, language: Language
    ) -> Optional[Template]:
        """Exact (key, language) lookup without language fallback"""
        return await self._lookup(organization_id, key, Language(language))

    @staticmethod
    def required_variables(template: Template) -> List[str]:
        required = list(template.variables)
        for name in extract_placeholders(template.content):
            if name not in required:
                required.append(name)
        return required

    def validate_variables(self, template: Template, variables: Dict[str, Any]) -> TemplateValidation:
        required = self.required_variables(template)
        provided = {k for k, v in variables.items() if v is not None}
        missing = sorted(name for name in required if name not in provided)
        extra = sorted(name for name in variables if name not in required)
        return TemplateValidation(valid=not missing, missing=missing, extra=extra)

    async def render_template(
        self,
        organization_id: Optional[str],
        key: str,
        language: Language,
        variables: Dict[str, Any],
        default_language: Optional[Language] = None
    ) -> RenderResult:
        requested = Language(language)
        try:
            template, fallback = await self.resolve(organization_id, key, requested, default_language)
        except TemplateNotFound as e:
            logger.warning(f"⚠️  {e.message}")
            return RenderResult(
                success=False,
                template_key=key,
                requested_language=requested,
                language=requested,
                error=e.message,
                error_code=e.code,
            )

        validation = self.validate_variables(template, variables)
        if not validation.valid:
            error = MissingVariable(validation.missing[0], validation.missing)
            logger.warning(f"⚠️  Render of {key}/{template.language.value} refused: missing {validation.missing}")
            return RenderResult(
                success=False,
                template_key=key,
                requested_language=requested,
                language=template.language,
                fallback=fallback,
                category=template.category,
                template_version=template.version,
                error=error.message,
                error_code=error.code,
                missing_variables=validation.missing,
            )

        return RenderResult(
            success=True,
            template_key=key,
            requested_language=requested,
            language=template.language,
            fallback=fallback,
            text=interpolate(template.content, variables),
            category=template.category,
            template_version=template.version,
        )

    async def list_templates(
        self,
        organization_id: str,
        category: Optional[TemplateCategory] = None,
        language: Optional[Language] = None
    ) -> List[Template]:
        """Organization overrides plus the system templates they do not shadow"""
        overrides = await self.persistence.list_templates(organization_id, category, language)
        shadowed = {(t.key, t.language) for t in overrides}
        system = [
            t for t in DEFAULT_TEMPLATES.values()
            if (t.key, t.language) not in shadowed
            and (category is None or t.category == category)
            and (language is None or t.language == language)
        ]
        return sorted(overrides + system, key=lambda t: (t.key, t.language.value))

    async def save_template(self, draft: TemplateDraft) -> Template:
        variables = draft.variables if draft.variables is not None else extract_placeholders(draft.content)
        existing = await self.persistence.get_template(draft.organizationId, draft.key, draft.language)
        now = utcnow()
        template = Template(
            organization_id=draft.organizationId,
            key=draft.key,
            language=draft.language,
            content=draft.content,
            variables=variables,
            category=draft.category,
            is_active=draft.is_active,
            version=existing.version + 1 if existing else 1,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if existing:
            template.id = existing.id
        saved = await self.persistence.upsert_template(template)
        logger.info(f"✅ Template {saved.key}/{saved.language.value} saved (v{saved.version})")
        return saved

    async def update_template(self, update: TemplateUpdate) -> Template:
        existing = await self.persistence.get_template(update.organizationId, update.key, update.language)
        if not existing:
            raise NotFoundError(
                f"Template {update.key} ({update.language.value}) not found",
                details={"template_key": update.key}
            )
        content = update.content if update.content is not None else existing.content
        if update.variables is not None:
            variables = update.variables
        elif update.content is not None:
            variables = extract_placeholders(content)
        else:
            variables = existing.variables
        return await self.save_template(TemplateDraft(
            organizationId=update.organizationId,
            key=update.key,
            language=update.language,
            content=content,
            variables=variables,
            category=update.category or existing.category,
            is_active=existing.is_active if update.is_active is None else update.is_active,
        ))

    async def test_template(
        self,
        organization_id: str,
        key: str,
        language: Language,
        variables: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Render preview: never sends, never writes"""
        template = await self.get_template(organization_id, key, language)
        if not template:
            return {"success": False, "error": f"Template {key} not found in {Language(language).value}"}

        validation = self.validate_variables(template, variables)
        if not validation.valid:
            return {
                "success": False,
                "error": f"Missing variables: {', '.join(validation.missing)}",
                "validation": validation.model_dump(),
            }
        return {
            "success": True,
            "formattedMessage": interpolate(template.content, variables),
            "validation": validation.model_dump(),
            "template": template.model_dump(mode="json"),
        }


def render_error(result: RenderResult) -> ContentError:
    """The content error a failed render corresponds to"""
    if result.error_code == MissingVariable.code and result.missing_variables:
        return MissingVariable(result.missing_variables[0], result.missing_variables)
    return TemplateNotFound(result.error or "Template not found", details={"template_key": result.template_key})