"""流式聊天编排层。

- cancellation: 取消令牌与按 key 管理的取消控制器。
- message_store: 会话消息列表，乐观消息与权威数据的对账。
- status_machine: 会话级聊天状态机。
- phase: 单条助手消息的展示阶段推导（去抖、单调前进）。
- private_engine / server_engine: 私有模式与服务端模式的生成引擎。
- orchestrator: 按模式分发的统一入口。
- background_jobs: 后台任务跟踪与通知。
"""
