from call_trainer.engine import run

run()
