#!/usr/bin/env python3
"""Runnable demo: plan, apply and destroy the pixel tracking stack locally.

Everything is written under ./.stackplan by the local provider:
    python examples/pixel_tracking_demo.py
"""

from __future__ import annotations

import asyncio

from rich.console import Console

from stackplan.config.loader import build_engine_config
from stackplan.config.templates import build_stack_config
from stackplan.deploy.runner import StackRunner
from stackplan.observability.logging import configure_logging

console = Console()


def main() -> None:
    # 1. Build configs from the bundled template and engine defaults
    stack = build_stack_config({"stack_name": "pixel-demo"})
    engine = build_engine_config({"logging": {"level": "WARNING"}})
    configure_logging(engine.logging)
    runner = StackRunner(stack, engine)

    async def lifecycle() -> None:
        # 2. Plan against empty state
        plan = await runner.plan()
        for wave in plan.waves:
            names = ", ".join(op.name for op in wave)
            console.print(f"[cyan]wave {wave[0].wave}[/cyan]  {names}")

        # 3. Apply, then show outputs
        result = await runner.apply(plan=plan)
        console.print(f"[green]Applied {len(result.operations)} operation(s)[/green]")
        for key, value in result.outputs.items():
            console.print(f"  {key} = {value}")

        # 4. Second plan is empty
        again = await runner.plan()
        console.print(f"Re-plan empty: {again.is_empty}")

        # 5. Tear everything down in reverse order
        destroyed = await runner.destroy(confirm=True)
        console.print(f"[red]Destroyed[/red] {', '.join(destroyed.completed)}")

    asyncio.run(lifecycle())


if __name__ == "__main__":
    main()
