# stockrecon/__init__.py
"""
stockrecon：收货 / 盘点对账引擎。

计划量 vs 实际量的行表、扫码队列、草稿自动保存、差异计算、
库存提交（主/备 mutation + 激活）与审计日志。
"""

__version__ = "0.4.0"
