"""全局测试配置：测试模式，关闭对账 / 通知重试 / 汇率后台任务。"""

import os

# 必须在导入 app.main 之前设置
os.environ["TESTING"] = "1"

# 环境中的手续费方案和阈值会覆盖内置默认值，测试里清掉
for _key in ("FEE_SCHEDULE", "MINIMAL_PAYOUT", "MAX_REPORT_ATTEMPTS", "PAYOUT_CONFIRMATIONS"):
    os.environ.pop(_key, None)
