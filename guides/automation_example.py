"""Example running an expense claim through the automation layer.

Uses ``procession.yaml`` (or ``PROCESSION_CONFIG``) for settings and the
configured database and notification backends.
"""

import asyncio

from procession import (
    ExecutionEngine,
    InMemoryPatternRepository,
    ProcessAutomationEngine,
    ProcessMonitor,
    WorkflowPattern,
    build_advisor,
    get_sink,
    get_store,
    load_config,
)

EXPENSE_CLAIM = WorkflowPattern.model_validate(
    {
        "id": "expense_claim",
        "name": "Expense Claim",
        "steps": [
            {
                "id": "submit",
                "name": "Submit Claim",
                "type": "manual",
                "required_fields": ["amount"],
                "conditions": [
                    {
                        "field": "amount",
                        "operator": "greater_than",
                        "value": 1000,
                        "next_step": "manager_review",
                    },
                    {"else_step": "approve"},
                ],
            },
            {
                "id": "manager_review",
                "name": "Manager Review",
                "type": "approval",
                "assignee_roles": ["manager"],
            },
            {"id": "approve", "name": "Approve Payment", "type": "automated"},
        ],
    }
)


async def main():
    config = load_config()
    sink = get_sink(config=config)
    engine = ExecutionEngine(
        InMemoryPatternRepository([EXPENSE_CLAIM]),
        get_store(config=config),
        sink,
        settings=config.engine,
    )
    monitor = ProcessMonitor(sink, config.monitor)
    automation = ProcessAutomationEngine(
        engine, build_advisor(config), config.automation, monitor=monitor
    )
    automation.start()

    process = await automation.start_automated_process(
        EXPENSE_CLAIM, "alice", "expenses", "acme"
    )
    await automation.advance_process("acme", process.execution_id, {"amount": 250})
    await asyncio.sleep(config.engine.automated_settle_seconds + 0.5)

    dashboard = monitor.get_dashboard("acme")
    print(f"Completed: {dashboard.analytics.completed_processes}")
    print(f"Automation efficiency: {dashboard.analytics.automation_efficiency:.0%}")

    await automation.stop()
    await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
