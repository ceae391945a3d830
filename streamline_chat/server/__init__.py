"""流式聊天接口的服务端（事件流生产端）。"""
