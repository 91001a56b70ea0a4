from .html_text import html_to_text

__all__ = ["html_to_text"]
