"""
app.client
~~~~~~~~~~

聊天客户端：本地状态镜像 + 自动重连的 WebSocket 连接。
"""
from app.client.chat_client import ChatClient
from app.client.chat_state import ChatState, ClientMessage, TypingUser
