# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "weft @ file:///${PROJECT_ROOT}/../weft",
# ]
# ///
"""RSGI server demo.

Fully functional web server using Granian + weft App.
"""

import asyncio
import logging
import sqlite3

from weft import App, Context, DecodeError

PORT = 8000


def open_db() -> sqlite3.Connection:
    db = sqlite3.connect(":memory:")
    db.cursor().executescript("""
    CREATE TABLE IF NOT EXISTS user (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL
    );
    """)
    return db


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    app = App(error_handler=on_error)
    app.bind_context({"db": open_db()})
    app.use(request_id)
    app.get("/", home)

    users = app.subrouter("/user")
    users.get("/", get_users)
    users.get("/:id", get_user)
    users.post("/", create_user)

    try:
        await app.serve(PORT)
    except asyncio.CancelledError:
        pass


async def on_error(ctx: Context, exc: Exception) -> None:
    if isinstance(exc, DecodeError):
        ctx.text(422, str(exc))
        return
    logging.getLogger(__name__).exception("unhandled error", exc_info=exc)
    ctx.text(500, "internal server error")


async def request_id(ctx: Context) -> None:
    if rid := ctx.header("X-Request-Id"):
        ctx.response.headers["x-request-id"] = rid


async def home(ctx: Context) -> None:
    ctx.text(200, "Welcome home")


async def get_users(ctx: Context) -> None:
    cur = ctx.context["db"].cursor()
    cur.execute("SELECT * FROM user")
    ctx.json(200, [{"id": row[0], "name": row[1]} for row in cur.fetchall()])


async def get_user(ctx: Context) -> None:
    try:
        user_id = int(ctx.param("id"))
    except ValueError:
        ctx.text(404, "Not found")
        return
    cur = ctx.context["db"].cursor()
    cur.execute("SELECT * FROM user WHERE id = ?", (user_id,))
    result = cur.fetchone()
    if result is None:
        ctx.text(404, "Not found")
        return
    ctx.json(200, {"id": result[0], "name": result[1]})


async def create_user(ctx: Context) -> None:
    payload = await ctx.decode_json()
    if not isinstance(payload, dict) or "name" not in payload:
        ctx.text(422, "Missing name")
        return
    cur = ctx.context["db"].cursor()
    cur.execute("INSERT INTO user (name) VALUES (?) RETURNING *", (payload["name"],))
    result = cur.fetchone()
    ctx.redirect(f"/user/{result[0]}", 303)


if __name__ == "__main__":
    asyncio.run(main())
