from voice_gym.cli import app

app()
