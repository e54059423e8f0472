"""sgpuz.cli — command-line interface modules.

main.py     = Entry point + argument parsing
console.py  = Interactive session: bootstrap, workers, cleanup
monitor.py  = Sampling / rendering worker + frame renderer
controls.py = Keyboard worker: keystroke → overclock command
"""
