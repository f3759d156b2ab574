from pvechores.cli import app

app()
