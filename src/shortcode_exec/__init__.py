"""
Shortcode Exec - Secure execution of registered code snippets

Trusted administrators register named Python snippets ("shortcodes") that
are invoked by tag inside rendered content, executed server-side and
replaced with their output.

Main Components:
- Sandbox: name validation, static code analysis, capability gate,
  resource-limited executor and audit logging
- Registry: named snippet storage (in-memory and JSON file)
- Manager: create/update/delete/test operations for administrators
- Shortcodes: content rendering through installed dispatch bindings

The static analysis is a defense-in-depth layer and not an isolation
boundary: only fully trusted administrators may author snippet code.
"""

__version__ = "0.1.0"
__author__ = "Shortcode Exec Development Team"

__all__ = []
