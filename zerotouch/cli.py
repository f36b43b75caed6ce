import typer

from zerotouch.commands import plan, reset, run, status

app = typer.Typer(help="Zero-touch Kubernetes node bootstrap", no_args_is_help=True)

app.command("run")(run.run_cmd)
app.command("plan")(plan.plan_cmd)
app.command("status")(status.status_cmd)
app.command("reset")(reset.reset_cmd)

if __name__ == "__main__":
    app()
