#!/usr/bin/env python
from __future__ import annotations

import argparse
import random
import sys
from pathlib import Path

from openpyxl import Workbook

sys.path.append(str(Path(__file__).resolve().parents[1]))

from roster_workflow.core.national_id import complete_national_id, format_national_id
from roster_workflow.exporters.batch_export import ROSTER_TEMPLATE_HEADER

FIRST_NAMES = ["Ana", "Bruno", "Carla", "Diego", "Elaine", "Fábio", "Gisele", "Hugo", "Isabel", "João"]
LAST_NAMES = ["Silva", "Souza", "Oliveira", "Santos", "Pereira", "Lima", "Costa", "Almeida"]


def build_rows(count: int, seed: int) -> list[list[object]]:
    rng = random.Random(seed)
    rows: list[list[object]] = []
    for _ in range(count):
        name = f"{rng.choice(FIRST_NAMES)} {rng.choice(LAST_NAMES)}"
        sex = rng.choice(["Masculino", "Feminino"])
        cpf = format_national_id(complete_national_id(f"{rng.randrange(10**8, 10**9)}"))
        birth = f"{rng.randint(1, 28):02d}/{rng.randint(1, 12):02d}/{rng.randint(1960, 2004)}"
        salary = f"{rng.randint(1400, 5200)},{rng.randint(0, 99):02d}"
        rows.append([name, sex, cpf, birth, salary])
    return rows


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a sample employer roster workbook")
    parser.add_argument("--output", required=True, help="output file (.xlsx)")
    parser.add_argument("--workers", type=int, default=20, help="number of workers")
    parser.add_argument("--seed", type=int, default=7, help="random seed")
    parser.add_argument("--title", default="Relação de Colaboradores", help="title row above the header")
    args = parser.parse_args()

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Colaboradores"
    sheet.append([args.title])
    sheet.append(ROSTER_TEMPLATE_HEADER)
    for row in build_rows(args.workers, args.seed):
        sheet.append(row)
    workbook.save(output)

    print(f"sample roster written: {output}")


if __name__ == "__main__":
    main()
