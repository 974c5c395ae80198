"""
Flask CLI commands for cron-driven deployments:

    flask init-db
    flask mature-earnings
    flask reconcile-payouts
"""
import click


def register_commands(app):

    @app.cli.command("init-db")
    def cli_init_db():
        """Create any missing tables."""
        from bookd import db
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("mature-earnings")
    def cli_mature_earnings():
        """Promote earnings entries past their maturation date to payable."""
        from bookd.jobs import mature_earnings
        count = mature_earnings()
        click.echo("Matured {} earnings entries.".format(count))

    @app.cli.command("reconcile-payouts")
    def cli_reconcile_payouts():
        """Reconcile pending payouts against PayPal."""
        from bookd.jobs import reconcile_payouts
        summary = reconcile_payouts()
        for key, value in summary.to_dict().items():
            click.echo("  {}: {}".format(key, value))
        click.echo("Reconciliation complete.")
