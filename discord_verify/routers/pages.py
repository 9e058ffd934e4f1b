"""Result pages shown at the end of the browser flow."""
from html import escape

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

router = APIRouter(tags=["pages"])

PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
</head>
<body>
<main>
<article>
<h1>{title}</h1>
{body}
<p><small>{footer}</small></p>
</article>
</main>
</body>
</html>
"""


def render(title: str, body: str, footer: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(PAGE.format(title=escape(title), body=body, footer=escape(footer)), status_code=status_code)


def error_content(code: str, account_url: str) -> tuple[str, str]:
    settings_link = f'<a href="{escape(account_url)}" target="_blank" rel="noopener noreferrer">account settings</a>'
    messages = {
        "expired": (
            "Verification Link Expired",
            "This verification link has expired. Please run <code>/verify</code> in Discord again to get a new link.",
        ),
        "wrong_account": (
            "Wrong Discord Account",
            "The Discord account you linked doesn't match the one that requested verification. "
            "If you need to switch accounts, please unlink the current Discord account in your "
            f"{settings_link} and try again.",
        ),
        "already_linked": (
            "Account Already Linked",
            f"Your account is already linked to a different Discord account. Please unlink it first in your {settings_link}.",
        ),
        "not_linked": (
            "Discord Account Not Linked",
            "Your Discord account was not successfully linked. Please try the verification process again.",
        ),
        "incomplete": (
            "Verification Incomplete",
            "Your accounts were linked, but your roles could not be assigned. "
            "Please contact a server administrator.",
        ),
        "server_error": (
            "Server Error",
            "An unexpected error occurred. Please try again later or contact an administrator if the problem persists.",
        ),
    }
    return messages.get(
        code,
        ("Unknown Error", "An error occurred during verification. Please try again or contact an administrator."),
    )


@router.get("/success", response_class=HTMLResponse)
async def success_page(request: Request):
    label = request.app.state.verify.settings.SSO_ACCOUNT_LABEL
    return render(
        "Verification Complete",
        f"<p>Your {escape(label)} has been successfully linked to Discord.</p>",
        "You can now close this window.",
    )


@router.get("/error", response_class=HTMLResponse)
async def error_page(request: Request, msg: str = ""):
    settings = request.app.state.verify.settings
    title, body = error_content(msg, settings.account_console_url)
    return render(title, f"<p>{body}</p>", "You can close this window and return to Discord.")
