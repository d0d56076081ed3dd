from __future__ import annotations

from datetime import datetime
from html import escape

PRODUCT_NAME = "LeadFlux"
_DEFAULT_CUSTOMER_NAME = "Cliente"


def _access_until(subscription_end: str | None) -> str:
    if not subscription_end:
        return "o final do período atual"
    try:
        parsed = datetime.fromisoformat(subscription_end.strip().replace("Z", "+00:00"))
    except ValueError:
        return "o final do período atual"
    return parsed.strftime("%d/%m/%Y")


def _button(url: str, label: str, color: str) -> str:
    return (
        f'<p style="text-align:center;margin-top:30px;">'
        f'<a href="{escape(url)}" style="display:inline-block;background:{color};color:white;'
        f'padding:14px 28px;border-radius:8px;text-decoration:none;font-weight:600;">{escape(label)}</a></p>'
    )


def _wrap(body: str) -> str:
    return (
        "<html><body>"
        '<div style="font-family:-apple-system,BlinkMacSystemFont,\'Segoe UI\',Roboto,sans-serif;'
        'max-width:600px;margin:0 auto;padding:20px;">'
        f"{body}"
        "</div></body></html>"
    )


def subscription_created_email(plan_name: str | None, customer_name: str | None, site_url: str) -> dict[str, str]:
    name = customer_name or _DEFAULT_CUSTOMER_NAME
    plan = plan_name or "Premium"
    dashboard_url = f"{site_url.rstrip('/')}/dashboard"

    subject = f"Bem-vindo ao plano {plan}!"
    text = "\n".join(
        [
            f"Parabéns, {name}!",
            "Sua assinatura foi ativada com sucesso.",
            "",
            f"Plano: {plan}",
            "Status: Ativo",
            "",
            f"Acessar dashboard: {dashboard_url}",
            "",
            f"Obrigado por escolher o {PRODUCT_NAME}!",
        ]
    )
    html = _wrap(
        f"<h1>Parabéns, {escape(name)}!</h1>"
        "<p>Sua assinatura foi ativada com sucesso.</p>"
        f"<p><strong>Plano:</strong> {escape(plan)}<br/><strong>Status:</strong> Ativo</p>"
        f"{_button(dashboard_url, 'Acessar Dashboard', '#667eea')}"
        f"<p>Obrigado por escolher o {PRODUCT_NAME}! Estamos aqui para ajudar você a crescer.</p>"
    )
    return {"subject": subject, "html": html, "text": text}


def subscription_canceled_email(
    subscription_end: str | None,
    customer_name: str | None,
    site_url: str,
) -> dict[str, str]:
    name = customer_name or _DEFAULT_CUSTOMER_NAME
    until = _access_until(subscription_end)
    pricing_url = f"{site_url.rstrip('/')}/dashboard/pricing"

    subject = "Sentiremos sua falta"
    text = "\n".join(
        [
            f"Sentiremos sua falta, {name}.",
            "Sua assinatura foi cancelada.",
            "",
            f"Você ainda terá acesso ao seu plano até {until}.",
            "",
            f"Mudou de ideia? Reative sua assinatura: {pricing_url}",
        ]
    )
    html = _wrap(
        f"<h1>Sentiremos sua falta, {escape(name)}</h1>"
        "<p>Sua assinatura foi cancelada.</p>"
        f"<p><strong>Atenção:</strong> Você ainda terá acesso ao seu plano até {escape(until)}.</p>"
        "<p>Mudou de ideia? Você pode reativar sua assinatura a qualquer momento.</p>"
        f"{_button(pricing_url, 'Reativar Assinatura', '#667eea')}"
    )
    return {"subject": subject, "html": html, "text": text}


def payment_failed_email(customer_name: str | None, site_url: str) -> dict[str, str]:
    name = customer_name or _DEFAULT_CUSTOMER_NAME
    pricing_url = f"{site_url.rstrip('/')}/dashboard/pricing"

    subject = "Problema com seu pagamento"
    text = "\n".join(
        [
            f"Atenção, {name}.",
            "Não conseguimos processar seu pagamento.",
            "Para evitar a interrupção do seu serviço, atualize suas informações de pagamento.",
            "",
            f"Atualizar pagamento: {pricing_url}",
        ]
    )
    html = _wrap(
        f"<h1>Atenção, {escape(name)}</h1>"
        "<p>Houve um problema com seu pagamento.</p>"
        "<p>Não conseguimos processar seu pagamento. Para evitar a interrupção do seu serviço, "
        "por favor atualize suas informações de pagamento.</p>"
        f"{_button(pricing_url, 'Atualizar Pagamento', '#dc3545')}"
    )
    return {"subject": subject, "html": html, "text": text}


def payment_success_email(plan_name: str | None, customer_name: str | None, site_url: str) -> dict[str, str]:
    name = customer_name or _DEFAULT_CUSTOMER_NAME
    plan = plan_name or "Premium"
    dashboard_url = f"{site_url.rstrip('/')}/dashboard"

    subject = "Pagamento confirmado"
    text = "\n".join(
        [
            f"Pagamento confirmado! Obrigado, {name}.",
            f"Continue aproveitando todos os recursos do seu plano {plan}.",
            "",
            f"Acessar dashboard: {dashboard_url}",
        ]
    )
    html = _wrap(
        "<h1>Pagamento confirmado!</h1>"
        f"<p>Obrigado, {escape(name)}</p>"
        "<p>Seu pagamento foi processado com sucesso. "
        f"Continue aproveitando todos os recursos do seu plano {escape(plan)}.</p>"
        f"{_button(dashboard_url, 'Acessar Dashboard', '#28a745')}"
    )
    return {"subject": subject, "html": html, "text": text}


def subscription_email(
    notification_type: str,
    *,
    plan_name: str | None,
    subscription_end: str | None,
    customer_name: str | None,
    site_url: str,
) -> dict[str, str]:
    if notification_type == "subscription_created":
        return subscription_created_email(plan_name, customer_name, site_url)
    if notification_type == "subscription_canceled":
        return subscription_canceled_email(subscription_end, customer_name, site_url)
    if notification_type == "payment_failed":
        return payment_failed_email(customer_name, site_url)
    if notification_type == "payment_success":
        return payment_success_email(plan_name, customer_name, site_url)

    return {
        "subject": "Atualização da sua assinatura",
        "html": _wrap("<p>Houve uma atualização na sua assinatura.</p>"),
        "text": "Houve uma atualização na sua assinatura.",
    }
