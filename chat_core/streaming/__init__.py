"""推理服务响应流的解码。"""
