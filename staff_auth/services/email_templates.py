from __future__ import annotations

from dataclasses import dataclass
from html import escape

from staff_auth.schemas.common import CodePurpose


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    html: str
    text: str


_CODE_SUBJECTS = {
    CodePurpose.LOGIN: "Your {product} verification code",
    CodePurpose.ACCESS_REVALIDATION: "Your {product} access revalidation code",
    CodePurpose.PASSWORD_RESET: "Your {product} password reset verification code",
}

_CODE_SMS = {
    CodePurpose.LOGIN: "Your {product} verification code is {code}. It expires in {minutes} minutes.",
    CodePurpose.ACCESS_REVALIDATION: (
        "Your {product} access revalidation code is {code}. It expires in {minutes} minutes."
    ),
    CodePurpose.PASSWORD_RESET: (
        "Your {product} password reset verification code is {code}. It expires in {minutes} minutes."
    ),
}

_HTML_SHELL = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .button {{ display: inline-block; background: #1f6feb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{greeting}</p>
        {body}
        <div class="footer">
            <p>{product}</p>
            <p>{footer}</p>
        </div>
    </div>
</body>
</html>
"""


def _greeting(first_name: str | None) -> str:
    return f"Hello {first_name}," if first_name else "Hello,"


def code_sms_text(purpose: CodePurpose, code: str, *, product: str, minutes: int) -> str:
    return _CODE_SMS[purpose].format(product=product, code=code, minutes=minutes)


def render_code_email(
    purpose: CodePurpose, code: str, *, first_name: str | None, product: str, minutes: int
) -> RenderedMessage:
    subject = _CODE_SUBJECTS[purpose].format(product=product)
    footer = "If you did not request this code, you can ignore this email."
    html = _HTML_SHELL.format(
        title="Your verification code",
        greeting=escape(_greeting(first_name)),
        body=(
            f'<p>Use the code below to continue. It expires in {minutes} minutes.</p>\n'
            f'        <p class="code">{escape(code)}</p>'
        ),
        product=escape(product),
        footer=footer,
    )
    text = (
        f"{_greeting(first_name)}\n\n"
        f"Your verification code is {code}. It expires in {minutes} minutes.\n\n"
        f"{footer}\n\n---\n{product}\n"
    )
    return RenderedMessage(subject=subject, html=html, text=text)


def render_reset_email(
    reset_url: str, *, first_name: str | None, product: str, minutes: int
) -> RenderedMessage:
    footer = "If you did not request a password reset, you can ignore this email."
    html = _HTML_SHELL.format(
        title="Reset your password",
        greeting=escape(_greeting(first_name)),
        body=(
            f"<p>Use the button below to reset your password. This link expires in {minutes} minutes.</p>\n"
            f'        <p style="margin: 30px 0;"><a href="{escape(reset_url)}" class="button">Reset password</a></p>\n'
            f"        <p>If the button doesn't work, copy and paste this URL: {escape(reset_url)}</p>"
        ),
        product=escape(product),
        footer=footer,
    )
    text = (
        f"{_greeting(first_name)}\n\n"
        f"Use the link below to reset your password. This link expires in {minutes} minutes.\n\n"
        f"{reset_url}\n\n{footer}\n\n---\n{product}\n"
    )
    return RenderedMessage(subject=f"Reset your {product} password", html=html, text=text)
