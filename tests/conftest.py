"""
conftest.py 会在测试运行时被 Pytest 自动加载。

这里把项目的 src 目录加入模块搜索路径，测试文件即可直接
`import chat_relay`，无需先安装包。对同级及子目录的测试全局生效。
"""

import sys
from pathlib import Path

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))
