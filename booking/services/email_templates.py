"""
Built-in email templates (pt-BR) and template rendering.

Templates are resolved in two levels: a tenant override stored in
tenant.config["emailTemplates"][key] wins when it carries both a subject and
a body; otherwise the default below is used. Placeholders use the
{{variable}} syntax and businessName is always injected.
"""

import re
from typing import Any

APPOINTMENT_CONFIRMATION = "appointmentConfirmation"
APPOINTMENT_CANCELLATION = "appointmentCancellation"
APPOINTMENT_CANCELLED_ADMIN = "appointmentCancelledAdmin"
APPOINTMENT_COMPLETED = "appointmentCompleted"
APPOINTMENT_REMINDER = "appointmentReminder"
NEW_APPOINTMENT_ADMIN = "newAppointmentAdmin"
PAYMENT_CONFIRMATION = "paymentConfirmation"
PAYMENT_FAILED = "paymentFailed"
SUBSCRIPTION_CREATED = "subscriptionCreated"
SUBSCRIPTION_STATUS_CHANGED = "subscriptionStatusChanged"
WELCOME = "welcome"
PASSWORD_RESET = "passwordReset"

_WRAPPER = '<div style="font-family: Arial, sans-serif; padding: 20px; color: #333;">{content}</div>'
_DETAILS = (
    '<div style="background-color: #f3f4f6; padding: 15px; border-radius: 8px; margin: 20px 0;">'
    "{rows}</div>"
)
_SIGNATURE = "<br/><p>Atenciosamente,</p><p><strong>{{businessName}}</strong></p>"


def _heading(text: str, color: str = "#4F46E5") -> str:
    return f'<h2 style="color: {color};">{text}</h2>'


def _details(*rows: tuple[str, str]) -> str:
    return _DETAILS.format(
        rows="".join(
            f'<p style="margin: 5px 0;"><strong>{label}:</strong> {value}</p>'
            for label, value in rows
        )
    )


def _body(*parts: str) -> str:
    return _WRAPPER.format(content="".join(parts))


DEFAULT_TEMPLATES: dict[str, dict[str, str]] = {
    WELCOME: {
        "subject": "Bem-vindo ao {{businessName}}!",
        "body": _body(
            _heading("Bem-vindo, {{name}}!"),
            "<p>Sua conta foi criada com sucesso no <strong>{{businessName}}</strong>.</p>",
            "<p>Estamos muito felizes em ter você conosco.</p>",
            "<p>Acesse sua conta para realizar agendamentos e gerenciar seus serviços.</p>",
            _SIGNATURE,
        ),
    },
    PAYMENT_FAILED: {
        "subject": "Falha no Pagamento - {{businessName}}",
        "body": _body(
            _heading("Olá, {{name}}!", "#EF4444"),
            "<p>Infelizmente não conseguimos processar o seu pagamento.</p>",
            _details(("Valor", "{{amount}}"), ("Motivo", "{{reason}}"), ("Data", "{{date}}")),
            "<p>Por favor, verifique seus dados de pagamento e tente novamente.</p>",
            _SIGNATURE,
        ),
    },
    APPOINTMENT_REMINDER: {
        "subject": "Lembrete de Agendamento - {{businessName}}",
        "body": _body(
            _heading("Olá, {{userName}}!"),
            "<p>Lembrete do seu agendamento para amanhã.</p>",
            _details(
                ("Serviço", "{{serviceName}}"),
                ("Profissional", "{{professionalName}}"),
                ("Data", "{{date}} às {{time}}"),
            ),
            "<p>Estamos te esperando!</p>",
            _SIGNATURE,
        ),
    },
    APPOINTMENT_CONFIRMATION: {
        "subject": "Confirmação de Agendamento - {{businessName}}",
        "body": _body(
            _heading("Olá, {{userName}}!"),
            "<p>Seu agendamento foi confirmado com sucesso.</p>",
            _details(
                ("Serviço", "{{serviceName}}"),
                ("Profissional", "{{professionalName}}"),
                ("Data", "{{date}} às {{time}}"),
            ),
            "<p>Se precisar reagendar, entre em contato conosco.</p>",
            _SIGNATURE,
        ),
    },
    APPOINTMENT_CANCELLATION: {
        "subject": "Cancelamento de Agendamento - {{businessName}}",
        "body": _body(
            _heading("Olá, {{userName}}!", "#EF4444"),
            "<p>Seu agendamento foi cancelado.</p>",
            _details(("Serviço", "{{serviceName}}"), ("Data", "{{date}} às {{time}}")),
            _SIGNATURE,
        ),
    },
    APPOINTMENT_COMPLETED: {
        "subject": "Obrigado pela visita - {{businessName}}",
        "body": _body(
            _heading("Olá, {{userName}}!"),
            "<p>Obrigado pela visita! Esperamos vê-lo novamente em breve.</p>",
            _details(
                ("Serviço", "{{serviceName}}"),
                ("Profissional", "{{professionalName}}"),
                ("Data", "{{date}} às {{time}}"),
            ),
            _SIGNATURE,
        ),
    },
    SUBSCRIPTION_CREATED: {
        "subject": "Nova Assinatura Ativada - {{businessName}}",
        "body": _body(
            _heading("Olá, {{userName}}!"),
            "<p>Uma nova assinatura foi ativada para você.</p>",
            _details(
                ("Plano", "{{planName}}"),
                ("Créditos", "{{credits}}"),
                ("Período", "{{startDate}} até {{endDate}}"),
            ),
            "<p>Use seus créditos para agendar seus próximos horários com rapidez.</p>",
            _SIGNATURE,
        ),
    },
    SUBSCRIPTION_STATUS_CHANGED: {
        "subject": "Atualização na sua Assinatura - {{businessName}}",
        "body": _body(
            _heading("Olá, {{userName}}!"),
            "<p>Houve uma atualização na sua assinatura.</p>",
            _details(
                ("Plano", "{{planName}}"),
                ("Novo status", "{{status}}"),
                ("Válida até", "{{endDate}}"),
                ("Créditos restantes", "{{credits}}"),
            ),
            "<p>Se tiver qualquer dúvida, entre em contato conosco.</p>",
            _SIGNATURE,
        ),
    },
    PASSWORD_RESET: {
        "subject": "Recuperação de Senha - {{businessName}}",
        "body": _body(
            _heading("Recuperação de Senha"),
            "<p>Você solicitou a redefinição de sua senha.</p>",
            "<p>Clique no link abaixo para criar uma nova senha:</p>",
            '<p><a href="{{resetLink}}">Redefinir Minha Senha</a></p>',
            '<p style="font-size: 12px; color: #666; word-break: break-all;">{{resetLink}}</p>',
            "<br/><p>Se você não solicitou isso, ignore este e-mail.</p>",
        ),
    },
    PAYMENT_CONFIRMATION: {
        "subject": "Confirmação de Pagamento - {{businessName}}",
        "body": _body(
            _heading("Olá, {{name}}!"),
            "<p>Recebemos o seu pagamento.</p>",
            _details(
                ("Valor", "{{amount}}"),
                ("Código do pagamento", "{{id}}"),
                ("Data", "{{date}}"),
            ),
            "<br/><p>Obrigado pela preferência.</p><p><strong>{{businessName}}</strong></p>",
        ),
    },
    NEW_APPOINTMENT_ADMIN: {
        "subject": "Novo Agendamento: {{serviceName}} - {{date}} {{time}}",
        "body": _body(
            _heading("Novo Agendamento Recebido!"),
            "<p>Um novo agendamento foi realizado.</p>",
            _details(
                ("Cliente", "{{userName}} ({{userEmail}})"),
                ("Serviço", "{{serviceName}}"),
                ("Profissional", "{{professionalName}}"),
                ("Data", "{{date}} às {{time}}"),
            ),
            "<p>Acesse o painel administrativo para ver mais detalhes.</p>",
            "<br/><p><strong>{{businessName}}</strong></p>",
        ),
    },
    APPOINTMENT_CANCELLED_ADMIN: {
        "subject": "Agendamento Cancelado: {{serviceName}} - {{date}} {{time}}",
        "body": _body(
            _heading("Agendamento Cancelado", "#EF4444"),
            "<p>O seguinte agendamento foi cancelado:</p>",
            _details(
                ("Cliente", "{{userName}}"),
                ("Serviço", "{{serviceName}}"),
                ("Data", "{{date}} às {{time}}"),
            ),
            "<br/><p><strong>{{businessName}}</strong></p>",
        ),
    },
}

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def resolve_template(template_key: str, tenant_config: dict[str, Any] | None) -> dict[str, str]:
    """
    Tenant override when complete (subject and body), else the built-in default.

    Raises:
        KeyError: Unknown template key with no usable tenant override
    """
    custom_templates = (tenant_config or {}).get("emailTemplates") or {}
    custom = custom_templates.get(template_key)
    if isinstance(custom, dict) and custom.get("subject") and custom.get("body"):
        return {"subject": custom["subject"], "body": custom["body"]}
    return DEFAULT_TEMPLATES[template_key]


def substitute(text: str, variables: dict[str, Any]) -> str:
    """Replace every {{name}} with variables[name]; unknown placeholders are kept."""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables or variables[key] is None:
            return match.group(0)
        return str(variables[key])

    return _PLACEHOLDER.sub(_replace, text)


def render_template(
    template_key: str,
    variables: dict[str, Any],
    tenant_config: dict[str, Any] | None,
    business_name: str,
) -> tuple[str, str]:
    """Return (subject, html_body) for a template with businessName injected."""
    template = resolve_template(template_key, tenant_config)
    all_variables = {**variables, "businessName": business_name}
    return (
        substitute(template["subject"], all_variables),
        substitute(template["body"], all_variables),
    )
