from client_database.cli import run

run()
