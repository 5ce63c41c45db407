from studiostyle.cli import run

run()
