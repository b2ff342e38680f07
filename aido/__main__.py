from aido.main import run

run()
