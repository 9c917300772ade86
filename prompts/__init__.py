from .catalog import PromptCatalog, PromptCatalogError, PromptTemplate, get_catalog, set_catalog
from .render import (
    build_prompt_variables,
    render_template,
    variation_directive,
    with_prompt_controls,
)

__all__ = [
    "PromptCatalog",
    "PromptCatalogError",
    "PromptTemplate",
    "get_catalog",
    "set_catalog",
    "build_prompt_variables",
    "render_template",
    "variation_directive",
    "with_prompt_controls",
]
