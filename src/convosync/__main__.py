from convosync.cli import app

app()
