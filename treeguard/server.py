from datetime import timedelta

from flask import Flask

from treeguard import logs
from treeguard.config import load
from treeguard.game import Game
from treeguard.routes import register_game_routes


def create_app(cfg: dict | None = None, game: Game | None = None, start: bool = True) -> Flask:
    cfg = cfg or load()
    game = game or Game(cfg)

    app = Flask(__name__)
    app.secret_key = cfg.get("secret", "devsecret")
    app.permanent_session_lifetime = timedelta(days=30)
    app.extensions["treeguard"] = game

    register_game_routes(app, game)

    @app.route("/")
    def health():
        return {"ok": True, "status": "running"}

    if start:
        game.start()
    return app


if __name__ == "__main__":
    settings = load()
    logs.setup(settings["loglevel"])
    application = create_app(settings)
    try:
        application.run(host=settings["host"], port=settings["port"], debug=settings["debug"], use_reloader=False)
    finally:
        application.extensions["treeguard"].stop()
