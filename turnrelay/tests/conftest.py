import os

# 测试期间只输出到 stderr，不创建 ./logs
os.environ.setdefault("TURNRELAY_LOG_FILE", "")
