"""
Redirect destinations for the claim flow: GET /success and GET /error.
Errors carry a title, a message and optional technical details, never a stack trace.
"""
import html
from urllib.parse import urlencode

from fastapi import APIRouter
from fastapi.responses import HTMLResponse, RedirectResponse

from db_server.config import CLAIM_BASE_URL

router = APIRouter()


def redirect_to_error(title: str, message: str, details: str | None = None) -> RedirectResponse:
    params = {"title": title, "message": message}
    if details:
        params["details"] = details
    return RedirectResponse(url=f"{CLAIM_BASE_URL}/error?{urlencode(params)}", status_code=302)


def redirect_to_success(project_id: str, workspace_id: str | None = None) -> RedirectResponse:
    params = {"projectID": project_id}
    if workspace_id:
        params["workspaceId"] = workspace_id
    return RedirectResponse(url=f"{CLAIM_BASE_URL}/success?{urlencode(params)}", status_code=302)


def error_page(title: str, message: str, details: str | None = None, status_code: int = 400) -> HTMLResponse:
    details_html = f"<pre>{html.escape(details)}</pre>" if details else ""
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
  {details_html}
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


@router.get("/error", response_class=HTMLResponse)
def error(title: str = "Error", message: str = "Something went wrong.", details: str | None = None):
    return error_page(title, message, details, status_code=200)


@router.get("/success", response_class=HTMLResponse)
def success(projectID: str | None = None, workspaceId: str | None = None):
    """Claim succeeded; the database now belongs to the user's workspace."""
    project = html.escape(projectID or "")
    workspace = f"<p>Workspace: <code>{html.escape(workspaceId)}</code></p>" if workspaceId else ""
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Database claimed</title></head>
<body>
  <h1>Database claimed</h1>
  <p>Project <code>{project}</code> is now yours and will not be deleted.</p>
  {workspace}
</body>
</html>"""
    )
