"""Boilerplate rendering for Loom.

Markdown pages that resolve to no layout are wrapped in a minimal HTML
document so the output is always a complete page. The wrapper is a Jinja2
template rendered with autoescaping; the page body is passed as Markup.

Key class:
- BoilerplateRenderer: Renders the default document shell.
"""

from __future__ import annotations

from jinja2 import Environment, select_autoescape
from markupsafe import Markup

DEFAULT_BOILERPLATE = """<!DOCTYPE html>
<html lang="{{ lang }}">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ title }}</title>
</head>
<body>
{{ body }}
</body>
</html>
"""


class BoilerplateRenderer:
    """Renders the document shell used for layout-less Markdown pages."""

    def __init__(self, template: str = DEFAULT_BOILERPLATE):
        self.env = Environment(autoescape=select_autoescape(default_for_string=True))
        self._template = self.env.from_string(template)

    def render(self, title: str, body: str, lang: str = "en") -> str:
        """Render the shell around an HTML body.

        Args:
            title: Document title; escaped.
            body: Body HTML; inserted verbatim.
            lang: Value of the ``lang`` attribute.

        Returns:
            Complete HTML document.
        """
        return self._template.render(title=title, body=Markup(body), lang=lang)
