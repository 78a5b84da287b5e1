"""
HTML pages served by the auth routes.

- REPOST_HTML: fixed page for GET /callback. Fragment parameters never reach
  the server, so the page copies them into a form and POSTs it back to the
  same URL.
- render_error_page: error page for rejected logins
"""

import html

REPOST_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Signing in...</title>
</head>
<body>
    <noscript>JavaScript is required to complete sign in.</noscript>
    <script>
        (function () {
            var fragment = window.location.hash.substring(1);
            var form = document.createElement("form");
            form.method = "POST";
            form.action = window.location.pathname;
            fragment.split("&").forEach(function (pair) {
                if (!pair) {
                    return;
                }
                var parts = pair.split("=");
                var input = document.createElement("input");
                input.type = "hidden";
                input.name = decodeURIComponent(parts[0]);
                input.value = decodeURIComponent((parts[1] || "").replace(/\\+/g, " "));
                form.appendChild(input);
            });
            document.body.appendChild(form);
            form.submit();
        })();
    </script>
</body>
</html>
"""


def render_error_page(title: str, message: str, retry_url: str = "") -> str:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        message: Error message (no tokens or PII)
        retry_url: Login URL for the retry button; omitted when empty

    Returns:
        HTML document
    """
    retry_button = (
        f'<a href="{html.escape(retry_url, quote=True)}" class="button">Try Again</a>'
        if retry_url
        else ""
    )

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{html.escape(title)}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
            display: flex;
            align-items: center;
            justify-content: center;
            min-height: 100vh;
            margin: 0;
            background: #f3f4f6;
        }}
        .container {{
            background: white;
            border-radius: 12px;
            padding: 40px;
            max-width: 500px;
            text-align: center;
            box-shadow: 0 10px 40px rgba(0,0,0,0.1);
        }}
        h1 {{ color: #1f2937; font-size: 24px; margin-bottom: 16px; }}
        .message {{ color: #6b7280; font-size: 16px; line-height: 1.6; margin-bottom: 32px; }}
        .button {{
            display: inline-block;
            background: #4f46e5;
            color: white;
            padding: 14px 32px;
            border-radius: 8px;
            text-decoration: none;
            font-weight: 600;
        }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(title)}</h1>
        <p class="message">{html.escape(message)}</p>
        {retry_button}
    </div>
</body>
</html>
"""
