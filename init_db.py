import os
from flask_migrate import upgrade
from app import app, db, Setting, set_setting

def init_db():
    with app.app_context():
        # Schema is managed by Flask-Migrate
        upgrade(directory=os.path.join(app.root_path, 'migrations'))

        # Pre-populate the upload target from the environment
        server_url = os.getenv('GRAZETRAK_SERVER_URL')
        if server_url and db.session.get(Setting, 'server_url') is None:
            set_setting('server_url', server_url.strip(), commit=False)
            print(f"Server URL set to {server_url}")

        db.session.commit()
        print("Database initialized.")

if __name__ == "__main__":
    init_db()
