"""Rule definitions, the rule registry and the built-in rule set."""
