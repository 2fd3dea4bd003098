import asyncio
import json
import sys

import httpx
from jose import jwt
from websockets.asyncio.client import connect

from app.core.settings import settings

BASE_URL = f"http://127.0.0.1:{settings.PORT}"
WS_URL = f"ws://127.0.0.1:{settings.PORT}/ws/chat"


def make_token(user_id: int = 1, username: str = "rate-check") -> str:
    return jwt.encode(
        {"userId": user_id, "username": username},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


async def check_rest_rate_limit(token: str):
    print("=" * 50)
    print(" 验证 REST API 限流 (期望: 30/second) ")
    print("=" * 50)

    url = f"{BASE_URL}/api/chat/rooms"
    print(f"请求 {url} 35 次...")

    async with httpx.AsyncClient(headers={"Authorization": f"Bearer {token}"}) as client:
        responses = []
        for _ in range(35):
            try:
                resp = await client.get(url)
                responses.append(resp.status_code)
            except httpx.HTTPError as e:
                print(f"请求失败: {e}")

        print(f"状态码返回: {responses}")

        if 429 in responses:
            print("✅ 成功: 触发了 HTTP 429 Too Many Requests 限流！")
        else:
            print("❌ 失败: 没有触发 429 限流，或服务器未启动。")


async def check_ws_rate_limit(token: str):
    print("\n" + "=" * 50)
    print(f" 验证 WebSocket 消息限流 (期望: 每 {settings.WS_RATE_LIMIT_INTERVAL} 秒 1 条)")
    print("=" * 50)

    try:
        async with connect(f"{WS_URL}?token={token}") as websocket:
            await websocket.send(json.dumps({"event": "join-room", "data": {"room_id": "rate-check"}}))
            print("✅ 已连接并加入房间。现在快速发送两条消息...")

            await websocket.send(json.dumps({"event": "send-message", "data": {"message": "第一条"}}))
            print(" -> 发送消息 1")
            await websocket.send(json.dumps({"event": "send-message", "data": {"message": "第二条（过快）"}}))
            print(" -> 发送消息 2 (过快)")

            print("\n正在等待服务器响应...")
            limited = False
            for _ in range(5):
                try:
                    response = await asyncio.wait_for(websocket.recv(), timeout=2.0)
                except asyncio.TimeoutError:
                    break
                print(f"   服务器返回: {response}")
                event = json.loads(response)
                if event["event"] == "message-failed" and event["data"].get("code") == "rate_limited":
                    limited = True
                    print("\n✅ 成功: 收到了发送过快的限流错误！")
                    break

            if not limited:
                print("\n❌ 失败: 未收到限流错误。")

    except OSError as e:
        print(f"WebSocket 遇到了错误，请确认服务已启动: {e}")


async def main():
    print("🟢 开始执行限流防刷验证...\n")
    print(f"要求: 在运行本脚本前，请确保服务已经在 {BASE_URL} 运行，且 JWT_SECRET_KEY 与服务端一致。\n")

    token = make_token()
    await check_rest_rate_limit(token)
    await check_ws_rate_limit(token)

    print("\n🏁 验证结束。")


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
