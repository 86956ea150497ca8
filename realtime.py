# realtime.py
import logging

from flask_socketio import SocketIO, emit, join_room, leave_room

# one shared instance for the whole app
socketio = SocketIO(cors_allowed_origins="*", ping_interval=25, ping_timeout=20)

NS = "/rt"

log = logging.getLogger("realtime")


@socketio.on("connect", namespace=NS)
def on_connect(auth):
    emit("connected", {"ok": True})


@socketio.on("disconnect", namespace=NS)
def on_disconnect():
    pass


@socketio.on("subscribe", namespace=NS)
def on_subscribe(data):
    bus_id = (data or {}).get("bus_id")
    if bus_id:
        join_room(f"bus:{bus_id}")


@socketio.on("unsubscribe", namespace=NS)
def on_unsubscribe(data):
    bus_id = (data or {}).get("bus_id")
    if bus_id:
        leave_room(f"bus:{bus_id}")


def emit_seat_update(bus_id: int, payload: dict) -> bool:
    """
    Best-effort push of a seat-map change to the bus room. Called after the
    change is committed; a delivery failure never undoes it.
    """
    try:
        socketio.emit("seats:update", {"bus_id": bus_id, **payload}, room=f"bus:{bus_id}", namespace=NS)
        return True
    except Exception:
        log.exception("[realtime] seat update emit failed bus=%s", bus_id)
        return False
