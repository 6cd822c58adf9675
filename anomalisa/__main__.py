from . import init_db

init_db()
print("tables created")
