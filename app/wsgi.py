from app.hbx import create_app

app = create_app()
