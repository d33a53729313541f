"""Resolve ``{{ ... }}`` bindings in node configuration against a run's context."""

import re
from typing import Any, Dict

from jinja2 import TemplateError, StrictUndefined, Undefined
from jinja2.sandbox import SandboxedEnvironment


class BindingError(Exception):
    """A binding could not be resolved."""


SINGLE_EXPRESSION = re.compile(r'^\s*\{\{\s*(.+?)\s*\}\}\s*$', re.DOTALL)


class BindingResolver:
    """Walks a configuration value and renders every template string in it.

    A string that is exactly one ``{{ expr }}`` resolves to the raw value, so
    ``"{{ input }}"`` yields a dict rather than its text form.
    """

    def __init__(self):
        self.env = SandboxedEnvironment(
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def resolve(self, value: Any, context: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value, context)
        if isinstance(value, dict):
            return {k: self.resolve(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(item, context) for item in value]
        return value

    def _resolve_string(self, value: str, context: Dict[str, Any]) -> Any:
        if '{{' not in value and '{%' not in value:
            return value

        try:
            match = SINGLE_EXPRESSION.match(value)
            if match and '{{' not in match.group(1):
                result = self.env.compile_expression(match.group(1), undefined_to_none=False)(**context)
                if isinstance(result, Undefined):
                    raise BindingError(f"Cannot resolve '{value}': {match.group(1)} is undefined")
                return result
            return self.env.from_string(value).render(**context)
        except BindingError:
            raise
        except TemplateError as e:
            raise BindingError(f"Cannot resolve '{value}': {e}")
        except Exception as e:
            # Runtime errors from the expression itself, e.g. TypeError or ZeroDivisionError.
            raise BindingError(f"Cannot resolve '{value}': {type(e).__name__}: {e}")


_resolver = BindingResolver()


def resolve_bindings(config: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve all bindings in ``config`` using the shared resolver."""
    return _resolver.resolve(config, context)
