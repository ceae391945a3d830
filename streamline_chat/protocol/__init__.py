"""流式线协议：帧编解码 (frames) 与字节流解码器 (decoder)。"""
