"""List the rule registry."""

from pathlib import Path

import click
from rich.table import Table

from auditpipe.commands.run import build_rule_engine
from auditpipe.config_runtime import load_runtime_config
from auditpipe.orchestrator import PipelineConfig
from auditpipe.pipeline.ui import console, print_header, severity_style
from auditpipe.utils.error_handler import handle_exceptions


@click.command("rules")
@click.option("--ruleset", type=click.Path(dir_okay=False, path_type=Path), default=None, help="YAML rule set to load on top of the defaults")
@click.option("--category", default=None, help="Only rules in this category (e.g. quality or quality/complexity)")
@click.option("--enabled/--disabled", "enabled", default=None, help="Only enabled or only disabled rules")
@click.option("--root", default=".", type=click.Path(file_okay=False, path_type=Path), help="Project root (for .pf/config.json)")
@handle_exceptions
def rules_command(ruleset, category, enabled, root):
    """List registered rules with severity, category and status.

    Examples:
      auditpipe rules
      auditpipe rules --category security --enabled
      auditpipe rules --ruleset team-rules.yaml"""
    cfg = load_runtime_config(str(root))
    engine = build_rule_engine(PipelineConfig.from_runtime(cfg), ruleset)
    rules = engine.get_rules(category=category, enabled=enabled)

    print_header(f"RULE REGISTRY (version {engine.get_version()})")
    if not rules:
        console.print("[dim]No rules match.[/dim]")
        return

    table = Table(expand=True)
    table.add_column("Id", style="stage", no_wrap=True)
    table.add_column("Name")
    table.add_column("Category", style="path")
    table.add_column("Severity", width=9)
    table.add_column("Kind", width=8)
    table.add_column("Status", width=9)
    for rule in rules:
        style = severity_style(rule.severity.value)
        table.add_row(
            rule.id,
            rule.name,
            rule.category,
            f"[{style}]{rule.severity.value}[/{style}]",
            rule.pattern.kind.value,
            "[success]enabled[/success]" if rule.enabled else "[dim]disabled[/dim]",
        )
    console.print(table)
    console.print(f"{len(rules)} of {len(engine)} rules")
