"""
Command-line entry point of the Order Assembly Tool.

Commands:
    plan      print the box plan and checklist of one order
    simulate  replay a scan/weigh script against a simulated scale

Examples:
    python src/main.py plan --orders batch.xlsx --order SO-1042 --boxes boxes.xlsx
    python src/main.py simulate --orders batch.json --order SO-1042 --boxes boxes.json --script run.json
"""

import argparse
import json
import sys
from typing import List, Optional

import pandas as pd
from PySide6.QtCore import QCoreApplication, QEventLoop, QTimer

from assembly_engine import AssemblyEngine
from box_planner import BoxPackingPlanner, PackingMode, recommend_boxes
from checklist_model import BoxSettings, combine, sort_checklist_items
from equipment import SimulatedEquipment
from exceptions import OrderAssemblyError
from notification_gate import Notification
from order_loader import OrderData, OrderLoader, load_box_types
from product_catalog import ProductCatalog
from settings_manager import SettingsManager
from logger import get_logger, set_order_context

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="order-assembly", description="Order assembly verification tool")
    parser.add_argument('--config', default='config.ini', help="Path to config.ini")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--orders', required=True, help="Packing list (.xlsx or .json)")
    common.add_argument('--order', required=True, help="Order number")
    common.add_argument('--boxes', required=True, help="Box types (.xlsx or .json)")
    common.add_argument('--box', action='append', default=[],
                        help="Box name or marking to use (repeat for several boxes); "
                             "recommended boxes are used when omitted")
    common.add_argument('--catalog', help="Product catalog (.xlsx, .csv or .json)")
    common.add_argument('--mode', choices=[m.value for m in PackingMode], help="Packing mode override")

    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('plan', parents=[common], help="Print box plan and checklist")

    simulate = sub.add_parser('simulate', parents=[common], help="Replay a scan/weigh script")
    simulate.add_argument('--script', required=True, help="JSON list of steps")

    return parser


def _load_catalog(path: Optional[str], settings: SettingsManager) -> ProductCatalog:
    path = path or settings.get_catalog_path()
    if not path:
        # No catalog configured: every product uses default weights
        return ProductCatalog({})
    catalog = ProductCatalog()
    catalog.load(path)
    return catalog


def select_boxes(names: List[str], box_types: List[BoxSettings], order: OrderData,
                 mode: PackingMode) -> List[BoxSettings]:
    """Boxes named on the command line, or the recommendation for the order."""
    if names:
        by_name = {}
        for box in box_types:
            by_name[box.name] = box
            if box.marking:
                by_name[box.marking] = box
        missing = [n for n in names if n not in by_name]
        if missing:
            raise OrderAssemblyError(f"Unknown box types: {missing}")
        return [by_name[n] for n in names]

    recommendation = recommend_boxes(order.total_portions, box_types, mode)
    if recommendation.error:
        raise OrderAssemblyError(recommendation.error)
    for detail in recommendation.details:
        logger.info(detail)
    return recommendation.boxes


def _prepare(args, settings: SettingsManager):
    loader = OrderLoader()
    loader.load(args.orders)
    order = loader.get_order(args.order)
    set_order_context(order.order_id)

    mode = PackingMode(args.mode) if args.mode else settings.load_assembly_settings().packing_mode
    catalog = _load_catalog(args.catalog, settings)
    boxes = select_boxes(args.box, load_box_types(args.boxes), order, mode)
    return order, catalog, boxes, mode


def _print_checklist(items) -> None:
    df = pd.DataFrame([item.to_dict() for item in items])
    print(df.to_string(index=False) if not df.empty else "(empty checklist)")


def cmd_plan(args, settings: SettingsManager) -> int:
    order, catalog, boxes, mode = _prepare(args, settings)
    products = catalog.expand_order_items(order.lines)
    plan = BoxPackingPlanner(mode).plan(products, boxes)

    print(f"Order {order.order_id}: {plan.total_portions} portions, {len(plan.boxes)} boxes ({mode.value})")
    for box in plan.boxes:
        start, end = box.portions_range
        print(f"  Box {box.box_index + 1} {box.settings.name}: portions {start}-{end} "
              f"({box.portions_per_box}), expected {box.expected_weight:.3f} kg")
    if plan.has_overflow:
        print(f"  Unallocated: {plan.unallocated_portions} portions")
        for name, quantity in plan.unallocated_items:
            print(f"    {name} x {quantity}")

    print()
    _print_checklist(sort_checklist_items(combine(plan.boxes, products, order.is_ready)))
    return 1 if plan.has_overflow else 0


def _wait(ms: int):
    loop = QEventLoop()
    QTimer.singleShot(ms, loop.quit)
    loop.exec()


def run_script(engine: AssemblyEngine, equipment: SimulatedEquipment, steps: List[dict]) -> None:
    """
    Execute simulation steps. Supported steps:
        {"scan": "<code>"}, {"weight": 0.86}, {"wait_ms": 1600},
        {"confirm_box": 0}, {"active_box": 1}, {"select": "<item id>"}
    """
    for step in steps:
        logger.debug(f"Simulation step: {step}")
        if 'scan' in step:
            equipment.scan(str(step['scan']))
        elif 'weight' in step:
            equipment.set_weight(float(step['weight']), bool(step.get('stable', True)))
            engine.coordinator.poll_once()
        elif 'wait_ms' in step:
            _wait(int(step['wait_ms']))
        elif 'confirm_box' in step:
            engine.confirm_box(int(step['confirm_box']))
        elif 'active_box' in step:
            engine.set_active_box(int(step['active_box']))
        elif 'select' in step:
            engine.select_item(str(step['select']))
        else:
            logger.warning(f"Unknown simulation step ignored: {step}")


def cmd_simulate(args, settings: SettingsManager) -> int:
    # Timers need a live application object for the whole run
    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    order, catalog, boxes, _ = _prepare(args, settings)

    with open(args.script, 'r', encoding='utf-8') as f:
        steps = json.load(f)

    def print_notification(notification: Notification):
        print(f"[{notification.severity.value.upper()}] {notification.title}: {notification.description}")

    equipment = SimulatedEquipment()
    engine = AssemblyEngine.from_settings(equipment, settings, catalog=catalog, notification_sink=print_notification)
    engine.load_order(order, boxes)

    run_script(engine, equipment, steps)
    engine.leave_view()

    print()
    _print_checklist(engine.items)
    ready = engine.is_ready_available()
    print(f"\nReady: {'yes' if ready else 'no'}")
    return 0 if ready else 1


COMMANDS = {
    'plan': cmd_plan,
    'simulate': cmd_simulate,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = SettingsManager(args.config)

    try:
        return COMMANDS[args.command](args, settings)
    except OrderAssemblyError as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())
