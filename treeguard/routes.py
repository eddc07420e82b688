import json
import logging
import queue

from flask import Response, request, session

from treeguard.errors import GameError, NotFoundError, ValidationError
from treeguard.feeds import throttled
from treeguard.weapons import PRICES, drawodds


logger = logging.getLogger(__name__)

STREAM_INTERVAL = 1.0
STREAM_IDLE = 55


def register_game_routes(app, game):
    def _jsonpayload() -> dict:
        return request.get_json(silent=True) or {}

    def _int(payload: dict, name: str, default=None):
        value = payload.get(name, default)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"invalid_{name}") from None

    def currentaccount():
        accountid = session.get("accountid")
        if not accountid:
            return None
        try:
            return game.identity.account(accountid)
        except NotFoundError:
            session.pop("accountid", None)
            return None

    def unauthorized():
        return {"ok": False, "error": "unauthorized"}, 401

    @app.errorhandler(GameError)
    def gameerror(exc: GameError):
        if exc.status >= 500:
            logger.error("request failed: %s", exc.message)
        return {"ok": False, "error": exc.code}, exc.status

    @app.route("/api/register", methods=["POST"])
    def apiregister():
        payload = _jsonpayload()
        account = game.identity.register(payload.get("name", ""), payload.get("password", ""), payload.get("email"))
        session["accountid"] = account.id
        game.presence.online(account.id, account.displayname)
        return {"ok": True, "account": account.public()}

    @app.route("/api/login", methods=["POST"])
    def apilogin():
        payload = _jsonpayload()
        account = game.identity.login(payload.get("name", ""), payload.get("password", ""))
        session["accountid"] = account.id
        session.permanent = bool(payload.get("remember"))
        game.presence.online(account.id, account.displayname)
        return {"ok": True, "account": account.public()}

    @app.route("/api/logout", methods=["POST"])
    def apilogout():
        accountid = session.pop("accountid", None)
        if accountid:
            game.presence.offline(accountid)
        return {"ok": True}

    @app.route("/api/me")
    def apime():
        me = currentaccount()
        if not me:
            return unauthorized()
        return {"ok": True, "account": me.public()}

    @app.route("/api/weapons")
    def apiweapons():
        weapons = game.catalog.allweapons()
        floor = request.args.get("floor")
        return {
            "ok": True,
            "weapons": [w.todoc() for w in weapons],
            "prices": PRICES,
            "odds": {str(k): v for k, v in drawodds(weapons, floor).items()},
        }

    @app.route("/api/draw", methods=["POST"])
    def apidraw():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        result = game.ledger.draw(me.id, payload.get("rarity", ""), _int(payload, "cost", 0))
        if result.weapon.rarity == "LEGENDARY":
            try:
                game.chat.announcelegendary(me.id, me.displayname, result.weapon.name)
            except GameError:
                logger.warning("legendary announcement for %s failed", me.id, exc_info=True)
        return {"ok": True, **result.todict()}

    @app.route("/api/inventory/upgrade", methods=["POST"])
    def apiupgrade():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        inventory = game.ledger.upgrade(me.id, _int(payload, "index"), payload.get("weapon"))
        return {"ok": True, "inventory": [i.todoc() for i in inventory]}

    @app.route("/api/inventory/sell", methods=["POST"])
    def apisell():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        account = game.ledger.sell(me.id, _int(payload, "index"), _int(payload, "price", 0))
        return {"ok": True, "gold": account.gold, "inventory": [i.todoc() for i in account.inventory], "equipped": account.equipped}

    @app.route("/api/inventory/sacrifice", methods=["POST"])
    def apisacrifice():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        sacrifices = payload.get("sacrifices") or []
        if not isinstance(sacrifices, list):
            raise ValidationError("invalid_index")
        account = game.ledger.sacrifice(me.id, _int(payload, "target"), sacrifices, payload.get("weapon"), payload.get("gold"))
        return {"ok": True, "gold": account.gold, "inventory": [i.todoc() for i in account.inventory], "equipped": account.equipped}

    @app.route("/api/inventory/equip", methods=["POST"])
    def apiequip():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        return {"ok": True, "equipped": game.ledger.equip(me.id, _int(payload, "index"))}

    @app.route("/api/achievements", methods=["POST"])
    def apiachievement():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        unlocked = game.ledger.achievement(me.id, payload.get("id"), bool(payload.get("unlocked")), payload.get("progress") or 0)
        if unlocked:
            try:
                game.chat.announceachievement(me.id, me.displayname, str(payload.get("name") or payload.get("id")))
            except GameError:
                logger.warning("achievement announcement for %s failed", me.id, exc_info=True)
        return {"ok": True, "unlocked": unlocked}

    @app.route("/api/stats", methods=["POST"])
    def apistats():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        game.stats.record(me.id, _int(payload, "totaldamage", 0), _int(payload, "totalgoldearned", 0))
        return {"ok": True}

    @app.route("/api/world")
    def apiworld():
        return {"ok": True, "world": game.world.state().todoc()}

    @app.route("/api/attack", methods=["POST"])
    def apiattack():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        result = game.world.attack(me.id, me.displayname, payload.get("weaponid"), payload.get("level", 1))
        return {"ok": True, **result.todict()}

    @app.route("/api/attacks")
    def apiattacks():
        limit = min(100, max(1, request.args.get("limit", 20, type=int)))
        return {"ok": True, "attacks": [a.todoc() for a in game.world.recentattacks(limit)]}

    @app.route("/api/offline/save", methods=["POST"])
    def apiofflinesave():
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        snapshot = game.offline.save(me.id, payload.get("weaponid"), payload.get("level", 1), payload.get("interval"), payload.get("since"))
        game.presence.offline(me.id)
        return {"ok": True, "offline": snapshot.todoc()}

    @app.route("/api/offline/claim", methods=["POST"])
    def apiofflineclaim():
        me = currentaccount()
        if not me:
            return unauthorized()
        reward = game.offline.apply(me.id)
        game.presence.online(me.id, me.displayname)
        return {"ok": True, "reward": reward.todict() if reward else None}

    @app.route("/api/chat", methods=["GET", "POST"])
    def apichat():
        if request.method == "GET":
            limit = min(100, max(1, request.args.get("limit", 50, type=int)))
            return {"ok": True, "messages": [m.todoc() for m in game.chat.recent(limit)]}
        me = currentaccount()
        if not me:
            return unauthorized()
        payload = _jsonpayload()
        message = game.chat.send(me.id, me.displayname, payload.get("text", ""))
        return {"ok": True, "message": message.todoc()}

    @app.route("/api/online")
    def apionline():
        game.presence.cleanup()
        return {"ok": True, "users": game.presence.roster()}

    @app.route("/api/heartbeat", methods=["POST"])
    def apiheartbeat():
        me = currentaccount()
        if not me:
            return unauthorized()
        game.presence.heartbeat(me.id, me.displayname)
        return {"ok": True}

    @app.route("/api/stream")
    def apistream():
        updates: queue.Queue = queue.Queue()
        detach = throttled(game.world.subscribe, updates.put, STREAM_INTERVAL)

        def gen():
            idle = 0
            try:
                while idle < STREAM_IDLE:
                    try:
                        world = updates.get(timeout=1)
                    except queue.Empty:
                        idle += 1
                        yield "data: {\"kind\":\"ping\"}\n\n"
                        continue
                    idle = 0
                    yield f"data: {json.dumps({'kind': 'world', 'world': world.todoc()})}\n\n"
            finally:
                detach()

        return Response(gen(), mimetype="text/event-stream")
