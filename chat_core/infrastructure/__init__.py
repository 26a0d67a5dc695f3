"""基础设施层：日志与远端后端适配。"""
