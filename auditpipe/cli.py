"""AuditPipe CLI - Main entry point and command registration hub."""
# ruff: noqa: E402 - Intentional lazy loading: commands imported after cli group definition

import click
from rich.table import Table

from auditpipe import __version__
from auditpipe.pipeline.ui import console


class VerboseGroup(click.Group):
    """Help output grouped by category, rendered with Rich."""

    def format_commands(self, ctx, formatter):
        """Suppress the default command listing (format_help prints categories)."""
        pass

    COMMAND_CATEGORIES = {
        "ANALYSIS": {
            "title": "ANALYSIS",
            "description": "Run the staged analysis pipeline over a source tree",
            "commands": ["run"],
            "command_meta": {
                "run": {
                    "use_when": "Full scan of a directory, in CI or locally",
                },
            },
        },
        "INSPECTION": {
            "title": "INSPECTION",
            "description": "Look at the rule registry and stored executions",
            "commands": ["rules", "status"],
            "command_meta": {
                "rules": {
                    "use_when": "Check which rules a rule set enables",
                },
                "status": {
                    "use_when": "Review stage records and results of a past run",
                },
            },
        },
    }

    def format_help(self, ctx, formatter):
        super().format_help(ctx, formatter)

        registered = {
            name: cmd
            for name, cmd in self.commands.items()
            if not name.startswith("_") and not getattr(cmd, "hidden", False)
        }

        console.print()
        console.rule("[bold]COMMANDS[/bold]")

        for category_data in self.COMMAND_CATEGORIES.values():
            console.print(f"\n[bold cyan]{category_data['title']}[/bold cyan]")
            console.print(f"[dim]{category_data['description']}[/dim]")

            table = Table(show_header=False, box=None, padding=(0, 2, 0, 0))
            table.add_column("Command", style="stage", width=12)
            table.add_column("Description", style="white")
            table.add_column("When", style="dim", width=48)

            for cmd_name in category_data["commands"]:
                if cmd_name not in registered:
                    continue
                cmd = registered[cmd_name]

                first_line = (cmd.help or "").split("\n")[0].strip()
                period_idx = first_line.find(".")
                short_help = first_line[:period_idx] if period_idx > 0 else first_line
                if len(short_help) > 45:
                    short_help = short_help[:45].rsplit(" ", 1)[0] + "..."

                cmd_meta = category_data.get("command_meta", {}).get(cmd_name, {})
                hint = f"USE: {cmd_meta['use_when']}" if "use_when" in cmd_meta else ""
                table.add_row(cmd_name, short_help, hint)

            console.print(table)

        console.print()
        console.rule()
        console.print("For detailed options: [stage]auditpipe <command> --help[/stage]")


@click.group(cls=VerboseGroup)
@click.version_option(version=__version__, prog_name="auditpipe")
@click.help_option("-h", "--help")
def cli():
    """AuditPipe - staged static analysis with a concurrent agent scheduler.

    \b
    QUICK START:
      auditpipe run --root .          # Analyze the current directory
      auditpipe rules                 # List the rule registry
      auditpipe status <execution>    # Stage records of a stored run"""
    pass


from auditpipe.commands.rules import rules_command
from auditpipe.commands.run import run
from auditpipe.commands.status import status

cli.add_command(run)
cli.add_command(rules_command)
cli.add_command(status)


def main():
    """Main entry point for console script."""
    cli()


if __name__ == "__main__":
    main()
