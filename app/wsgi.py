from app.remonta import create_app

app = create_app()
