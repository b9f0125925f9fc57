# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Container Inspector - Tool to inspect a composed Keystone container.

This tool provides:
- Show all registrations with lifetime, key and alias information
- Show diagnostics (duplicates, lifetime captivity, counts)
- Show the construction graph and a valid resolution order
- Show the async initialization plan
- Export everything to JSON

The target is ``module:attribute`` where the attribute is a
``ServiceContainer`` or a zero-argument callable returning one.

Usage:
    python -m keystone.devtools.inspector myapp.composition:build_container
    python -m keystone.devtools.inspector myapp.composition:build_container --diagnostics
    python -m keystone.devtools.inspector myapp.composition:container --graph --plan
    python -m keystone.devtools.inspector myapp.composition:container --export container.json
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from keystone.core.container import ServiceContainer
from keystone.core.descriptors import ServiceLifetime
from keystone.core.errors import CircularDependencyError, KeystoneError, type_name
from keystone.core.graph import build_construction_graph, construction_dependencies
from keystone.core.validation import DiagnosticsReport

logger = logging.getLogger(__name__)


@dataclass
class ServiceInfo:
    """Information about a registered service."""

    service_type: str
    lifetime: ServiceLifetime
    implementation: str
    key: Optional[str] = None
    alias_of: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    is_created: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.service_type,
            "lifetime": self.lifetime.value,
            "implementation": self.implementation,
            "key": self.key,
            "alias_of": self.alias_of,
            "dependencies": self.dependencies,
            "is_created": self.is_created,
        }


def load_target(target: str) -> ServiceContainer:
    """Import ``module:attribute`` and return the container it names.

    Raises:
        ValueError: If the target is malformed or does not yield a container
    """
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Target must look like 'module:attribute', got {target!r}")

    module = importlib.import_module(module_name)
    obj: Any = module
    for part in attribute.split("."):
        obj = getattr(obj, part)

    if callable(obj) and not isinstance(obj, ServiceContainer):
        obj = obj()
    if not isinstance(obj, ServiceContainer):
        raise ValueError(f"{target} did not produce a ServiceContainer (got {type_name(type(obj))})")
    return obj


class ContainerInspector:
    """Inspector for a Keystone service container."""

    def __init__(self, container: ServiceContainer, console: Optional[Console] = None):
        self._container = container
        self.console = console or Console()

    def services(self, lifetime: Optional[ServiceLifetime] = None) -> List[ServiceInfo]:
        """Registered services in registration order.

        Args:
            lifetime: Filter by lifetime
        """
        descriptors = self._container.descriptors
        registered = {d.service_type for d in descriptors if not d.is_keyed}
        infos = []
        for descriptor in descriptors:
            if lifetime is not None and descriptor.lifetime is not lifetime:
                continue
            infos.append(
                ServiceInfo(
                    service_type=type_name(descriptor.service_type),
                    lifetime=descriptor.lifetime,
                    implementation=descriptor.implementation_name,
                    key=repr(descriptor.service_key) if descriptor.is_keyed else None,
                    alias_of=type_name(descriptor.alias_of) if descriptor.is_alias else None,
                    dependencies=[
                        type_name(d) for d in construction_dependencies(descriptor, registered)
                    ],
                    is_created=self._container.is_instantiated(descriptor),
                )
            )
        return infos

    def diagnostics(self) -> DiagnosticsReport:
        return self._container.get_diagnostics()

    def resolution_order(self) -> List[str]:
        """Construction order (dependencies first).

        Raises:
            CircularDependencyError: If the construction graph has a cycle
        """
        graph = build_construction_graph(self._container.descriptors)
        return [type_name(t) for t in graph.topological_order()]

    def to_dict(self, include_plan: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "services": [info.to_dict() for info in self.services()],
            "diagnostics": self.diagnostics().to_dict(),
        }
        try:
            data["resolution_order"] = self.resolution_order()
        except CircularDependencyError as e:
            data["resolution_order"] = None
            data["cycle"] = e.type_names
        if include_plan:
            plan = self._container.get_initialization_order()
            data["initialization_plan"] = [
                {
                    "order": step.order,
                    "service_type": type_name(step.service_type),
                    "priority": step.priority,
                    "depends_on": [type_name(d) for d in step.depends_on],
                }
                for step in plan
            ]
        return data

    def export_json(self, output_path: Path, include_plan: bool = False) -> None:
        """Export container state to JSON.

        Args:
            output_path: Path to output JSON file
            include_plan: Also compute and export the initialization plan
        """
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(include_plan=include_plan), f, indent=2)

        self.console.print(f"Exported to {output_path}")

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def print_services(self, lifetime: Optional[ServiceLifetime] = None) -> None:
        services = self.services(lifetime)
        table = Table(title=f"Registered services ({len(services)})")
        table.add_column("Service")
        table.add_column("Implementation")
        table.add_column("Lifetime")
        table.add_column("Key")
        table.add_column("Dependencies")
        table.add_column("Created", justify="center")

        for info in services:
            implementation = info.implementation
            if info.alias_of:
                implementation = f"alias of {info.alias_of}"
            table.add_row(
                info.service_type,
                implementation,
                info.lifetime.value,
                info.key or "",
                ", ".join(info.dependencies),
                "yes" if info.is_created else "no",
            )
        self.console.print(table)

    def print_diagnostics(self) -> None:
        report = self.diagnostics()
        table = Table(title="Diagnostics")
        table.add_column("Metric")
        table.add_column("Count", justify="right")
        table.add_row("Total services", str(report.total_services))
        table.add_row("Singletons", str(report.singleton_count))
        table.add_row("Scoped", str(report.scoped_count))
        table.add_row("Transient", str(report.transient_count))
        table.add_row("Keyed", str(report.keyed_count))
        self.console.print(table)

        if not report.warnings:
            self.console.print("[green]No warnings.[/green]")
            return
        self.console.print(f"[yellow]{len(report.warnings)} warning(s):[/yellow]")
        for warning in report.warnings:
            self.console.print(f"  [yellow]-[/yellow] {warning}")

    def print_graph(self) -> None:
        graph = build_construction_graph(self._container.descriptors)
        table = Table(title="Construction graph")
        table.add_column("Service")
        table.add_column("Depends on")
        for node in graph.nodes():
            deps = graph.dependencies_of(node)
            if deps:
                table.add_row(type_name(node), ", ".join(type_name(d) for d in deps))
        self.console.print(table)

        try:
            order = self.resolution_order()
        except CircularDependencyError as e:
            self.console.print(f"[red]{e.message}[/red]")
            return
        self.console.print(f"\nValid resolution order ({len(order)} services):")
        for i, name in enumerate(order, 1):
            self.console.print(f"  {i}. {name}")

    def print_plan(self) -> None:
        plan = self._container.get_initialization_order()
        if not len(plan):
            self.console.print("[yellow]No async-initializable services.[/yellow]")
            return
        table = Table(title="Initialization plan")
        table.add_column("#", justify="right")
        table.add_column("Service")
        table.add_column("Priority", justify="right")
        table.add_column("Depends on")
        for step in plan:
            table.add_row(
                str(step.order),
                type_name(step.service_type),
                str(step.priority),
                ", ".join(type_name(d) for d in step.depends_on),
            )
        self.console.print(table)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Inspect a Keystone service container",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List all registrations
  python -m keystone.devtools.inspector myapp.composition:build_container

  # Singletons only, with diagnostics
  python -m keystone.devtools.inspector myapp.composition:build_container \\
      --lifetime singleton --diagnostics

  # Construction graph and initialization plan
  python -m keystone.devtools.inspector myapp.composition:build_container --graph --plan

  # Export to JSON
  python -m keystone.devtools.inspector myapp.composition:build_container --export container.json
        """,
    )

    parser.add_argument(
        "target",
        help="module:attribute naming a ServiceContainer or a callable returning one",
    )

    parser.add_argument(
        "--lifetime",
        type=str,
        choices=["singleton", "scoped", "transient"],
        metavar="TYPE",
        help="Filter the service list by lifetime",
    )

    parser.add_argument(
        "--diagnostics",
        action="store_true",
        help="Show counts and validation warnings",
    )

    parser.add_argument(
        "--graph",
        action="store_true",
        help="Show the construction graph and resolution order",
    )

    parser.add_argument(
        "--plan",
        action="store_true",
        help="Show the async initialization plan (constructs initializable singletons)",
    )

    parser.add_argument(
        "--export",
        type=str,
        metavar="PATH",
        help="Export container state to JSON",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Print container state as JSON instead of tables",
    )

    args = parser.parse_args(argv)

    try:
        container = load_target(args.target)
    except (ImportError, AttributeError, ValueError) as e:
        logger.error(f"Failed to load container: {e}")
        return 1

    inspector = ContainerInspector(container)

    try:
        if args.json:
            print(json.dumps(inspector.to_dict(include_plan=args.plan), indent=2))
            return 0

        lifetime = ServiceLifetime(args.lifetime) if args.lifetime else None
        inspector.print_services(lifetime)

        if args.diagnostics:
            inspector.print_diagnostics()

        if args.graph:
            inspector.print_graph()

        if args.plan:
            inspector.print_plan()

        if args.export:
            inspector.export_json(Path(args.export), include_plan=args.plan)
    except KeystoneError as e:
        logger.error(f"Inspection failed: {e.message}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
