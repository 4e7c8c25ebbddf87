"""
Localized system messages, control-command synonyms and prompt guidance.

Every user-facing string the engine produces on its own (interruption
notices, command replies, error apologies) comes from a MessageCatalog so
hosts can translate or reword them. Host overrides are merged per language
over the bundled `en` and `es` defaults.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

logger = structlog.get_logger()


DEFAULT_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "flow_interrupted": "Switched to {{flowPrompt}}\n\n(Your previous \"{{previousFlowPrompt}}\" progress has been saved)",
        "flow_resumed": "Resuming where you left off with {{flowPrompt}}.",
        "flow_completed_generic": "Flow completed.",
        "critical_error": "I encountered a critical error. Let me restart our session to ensure everything works properly.",
        "invalid_input": "I'm sorry, I didn't understand that. Please try again.",
        "switch_no_branch_found": "SWITCH step: no branch found for value '{{switchValue}}' and no default branch defined",
        "case_no_branch_found": "CASE step: no condition matched and no default branch defined",
        "tool_failed": "Tool \"{{toolName}}\" failed: {{errorMessage}}",
        "tool_unavailable": "I'm sorry, the \"{{toolName}}\" service is temporarily unavailable. Please try again in a few minutes.",
        "retry_help_second": "Retry help (attempt {{attempt}}): \"{{toolName}}\" failed again. Please check that your information is complete and in the expected format.",
        "retry_help_third": "Retry help (attempt {{attempt}}): we keep having trouble with \"{{toolName}}\". Try different values, or contact support if this persists. Error details: {{errorMessage}}",
        "retry_help_many": "Retry help (attempt {{attempt}}): \"{{toolName}}\" is still failing. Consider cancelling and trying again later.",
        "subflow_not_found": "Sub-flow \"{{subFlowName}}\" not found.",
        "flow_not_found": "Could not start \"{{targetFlow}}\" - flow not found.",
        "flow_cycle_detected": "I got stuck repeating \"{{flowName}}\", so I stopped it. How else can I help?",
        "flow_depth_exceeded": "That request went too many steps deep, so I stopped it. How else can I help?",
        "flow_step_limit": "That took too many steps to finish, so I stopped it. How else can I help?",
        "flow_help_general": "Processing {{flowPrompt}} - You can also 'cancel' or request 'help'.",
        "flow_help_payment": "Processing {{flowPrompt}} - Type 'cancel' or 'help' for options.",

        "cmd_flow_exited": "Successfully exited {{flowName}}. How can I help you with something else?",
        "cmd_help_title": "Flow Help - {{flowName}}",
        "cmd_help_available_commands": "Available commands while in this flow:",
        "cmd_help_cancel": "- \"cancel\" - Exit this flow completely",
        "cmd_help_status": "- \"status\" - Show current flow information",
        "cmd_help_help": "- \"help\" - Show this help message",
        "cmd_help_financial_warning": "This is a financial transaction flow. Please complete or cancel to maintain security.",
        "cmd_help_current_question": "Current Question:",
        "cmd_help_respond_instruction": "Please respond to the question above, or use a command listed above.",
        "cmd_help_continue_instruction": "Continue with your response to proceed, or use a command above.",

        "cmd_status_title": "Flow Status",
        "cmd_status_current_flow": "Current Flow: {{flowName}}",
        "cmd_status_steps_remaining": "Steps Remaining: {{stepsRemaining}}",
        "cmd_status_stack_depth": "Stack Depth: {{stackDepth}}",
        "cmd_status_transaction_id": "Transaction ID: {{transactionId}}",
        "cmd_status_collected_info": "Collected Information:",
        "cmd_status_hidden_value": "[HIDDEN]",
        "cmd_status_continue_instruction": "Continue with your response to proceed.",

        "guidance_general": "You can type cancel or help - To complete {{flowPrompt}}",
        "guidance_payment": "You can type cancel or help - Payment in progress",
    },
    "es": {
        "flow_interrupted": "Cambiado a {{flowPrompt}}\n\n(Su progreso anterior de \"{{previousFlowPrompt}}\" ha sido guardado)",
        "flow_resumed": "Continuando donde lo dejó con {{flowPrompt}}.",
        "flow_completed_generic": "Flujo completado.",
        "critical_error": "Encontré un error crítico. Permítame reiniciar nuestra sesión para asegurar que todo funcione correctamente.",
        "invalid_input": "Lo siento, no entendí eso. Por favor, inténtelo de nuevo.",
        "switch_no_branch_found": "Paso SWITCH: no se encontró rama para el valor '{{switchValue}}' y no se definió rama por defecto",
        "case_no_branch_found": "Paso CASE: ninguna condición coincidió y no se definió rama por defecto",
        "tool_failed": "Herramienta \"{{toolName}}\" falló: {{errorMessage}}",
        "tool_unavailable": "Lo siento, el servicio \"{{toolName}}\" no está disponible temporalmente. Por favor, inténtelo en unos minutos.",
        "retry_help_second": "Ayuda (intento {{attempt}}): \"{{toolName}}\" falló de nuevo. Verifique que su información esté completa y en el formato esperado.",
        "retry_help_third": "Ayuda (intento {{attempt}}): seguimos teniendo problemas con \"{{toolName}}\". Pruebe otros valores o contacte a soporte si el problema continúa. Detalles del error: {{errorMessage}}",
        "retry_help_many": "Ayuda (intento {{attempt}}): \"{{toolName}}\" sigue fallando. Considere cancelar e intentarlo más tarde.",
        "subflow_not_found": "Sub-flujo \"{{subFlowName}}\" no encontrado.",
        "flow_not_found": "No se pudo iniciar \"{{targetFlow}}\" - flujo no encontrado.",
        "flow_cycle_detected": "Me quedé repitiendo \"{{flowName}}\", así que lo detuve. ¿En qué más puedo ayudarle?",
        "flow_depth_exceeded": "La solicitud anidó demasiados pasos, así que la detuve. ¿En qué más puedo ayudarle?",
        "flow_step_limit": "La solicitud necesitó demasiados pasos, así que la detuve. ¿En qué más puedo ayudarle?",
        "flow_help_general": "Procesando {{flowPrompt}} - También puede 'cancelar' o solicitar 'ayuda'.",
        "flow_help_payment": "Procesando {{flowPrompt}} - Escriba 'cancelar' o 'ayuda' para opciones.",

        "cmd_flow_exited": "Salió exitosamente de {{flowName}}. ¿Cómo puedo ayudarle con algo más?",
        "cmd_help_title": "Ayuda del Flujo - {{flowName}}",
        "cmd_help_available_commands": "Comandos disponibles en este flujo:",
        "cmd_help_cancel": "- \"cancelar\" - Salir completamente de este flujo",
        "cmd_help_status": "- \"estado\" - Mostrar información del flujo actual",
        "cmd_help_help": "- \"ayuda\" - Mostrar este mensaje de ayuda",
        "cmd_help_financial_warning": "Este es un flujo de transacción financiera. Por favor complete o cancele para mantener la seguridad.",
        "cmd_help_current_question": "Pregunta Actual:",
        "cmd_help_respond_instruction": "Por favor responda a la pregunta anterior, o use un comando de la lista anterior.",
        "cmd_help_continue_instruction": "Continúe con su respuesta para proceder, o use un comando anterior.",

        "cmd_status_title": "Estado del Flujo",
        "cmd_status_current_flow": "Flujo Actual: {{flowName}}",
        "cmd_status_steps_remaining": "Pasos Restantes: {{stepsRemaining}}",
        "cmd_status_stack_depth": "Profundidad de Pila: {{stackDepth}}",
        "cmd_status_transaction_id": "ID de Transacción: {{transactionId}}",
        "cmd_status_collected_info": "Información Recopilada:",
        "cmd_status_hidden_value": "[OCULTO]",
        "cmd_status_continue_instruction": "Continúe con su respuesta para proceder.",

        "guidance_general": "Puede escribir cancelar o ayuda - Para completar {{flowPrompt}}",
        "guidance_payment": "Puede escribir cancelar o ayuda - Pago en progreso",
    },
}

COMMAND_SYNONYMS: dict[str, dict[str, list[str]]] = {
    "en": {
        "cancel": ["cancel", "abort", "stop", "exit", "quit", "end"],
        "help": ["help", "?", "options", "commands"],
        "status": ["status", "where am i", "what flow", "current flow", "info"],
    },
    "es": {
        "cancel": ["cancelar", "abortar", "parar", "salir", "terminar", "fin"],
        "help": ["ayuda", "?", "opciones", "comandos"],
        "status": ["estado", "donde estoy", "que flujo", "flujo actual", "info"],
    },
}

_PLACEHOLDER = re.compile(r'\{\{\s*(\w+)\s*\}\}')
_TRAILING_PUNCT = re.compile(r'[\s.!¡¿]+$')


class MessageCatalog:
    """Per-language system messages with host overrides."""

    def __init__(self, overrides: Optional[dict[str, dict[str, str]]] = None, language: str = "en"):
        self.language = language
        self._messages: dict[str, dict[str, str]] = {
            lang: dict(table) for lang, table in DEFAULT_MESSAGES.items()
        }
        for lang, table in (overrides or {}).items():
            self._messages.setdefault(lang, {}).update(table)

    def get(self, key: str, language: Optional[str] = None, **context: Any) -> str:
        lang = language or self.language
        template = (
            self._messages.get(lang, {}).get(key)
            or self._messages["en"].get(key)
        )
        if template is None:
            logger.warning("message_key_missing", key=key, language=lang)
            return key
        return render_message(template, context)

    def has(self, key: str, language: Optional[str] = None) -> bool:
        return key in self._messages.get(language or self.language, {})


def render_message(template: str, context: dict[str, Any]) -> str:
    """Fill `{{name}}` placeholders from `context`, leaving unknown ones intact."""
    def replacer(match):
        name = match.group(1)
        if name in context and context[name] is not None:
            return str(context[name])
        return match.group(0)
    return _PLACEHOLDER.sub(replacer, template)


def match_command(text: str, language: str = "en") -> Optional[str]:
    """
    Return "cancel", "help" or "status" when `text` is a control command.

    Matches a synonym exactly, or followed by "flow" / "workflow"
    (e.g. "cancel workflow"). Synonyms of the active language are tried
    first, then English.
    """
    normalized = _TRAILING_PUNCT.sub("", (text or "").strip().lower())
    if not normalized:
        return None
    languages = [language] + (["en"] if language != "en" else [])
    for lang in languages:
        for command, synonyms in COMMAND_SYNONYMS.get(lang, {}).items():
            for synonym in synonyms:
                if normalized in (synonym, f"{synonym} flow", f"{synonym} workflow"):
                    return command
    if (text or "").strip() == "?":
        return "help"
    return None


# ──────────────────────────────────────────────────────────────
#  Guidance — decorates SAY-GET prompts with command hints
# ──────────────────────────────────────────────────────────────

@dataclass
class GuidanceConfig:
    enabled: bool = False
    mode: str = "append"                    # append | prepend | template | none
    separator: str = "\n\n"
    template: str = "{{message}}\n\n{{guidance}}"
    context_selector: str = "auto"          # auto | general | payment
    messages: dict[str, dict[str, str]] = field(default_factory=dict)   # lang → {general, payment}

    @classmethod
    def from_settings(cls, settings) -> "GuidanceConfig":
        return cls(
            enabled=settings.enabled,
            mode=settings.mode,
            separator=settings.separator,
            template=settings.template,
            context_selector=settings.context_selector,
        )


def apply_guidance(
    message: str,
    config: GuidanceConfig,
    catalog: MessageCatalog,
    flow_name: str,
    flow_prompt: str,
    financial: bool,
    language: Optional[str] = None,
) -> str:
    """Combine a prompt with the guidance hint per `config.mode`."""
    if not config.enabled or config.mode == "none":
        return message

    if config.context_selector == "auto":
        context_type = "payment" if financial else "general"
    else:
        context_type = config.context_selector or "general"

    lang = language or catalog.language
    context = {"flowName": flow_name, "flowPrompt": flow_prompt, "message": message}
    custom = config.messages.get(lang, {}).get(context_type)
    guidance = render_message(custom, context) if custom else catalog.get(f"guidance_{context_type}", lang, **context)

    if config.mode == "prepend":
        return f"{guidance}{config.separator}{message}"
    if config.mode == "template" and config.template:
        return render_message(config.template, {**context, "guidance": guidance})
    return f"{message}{config.separator}{guidance}"
