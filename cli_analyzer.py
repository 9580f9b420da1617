# -*- coding: utf-8 -*-
"""
CLI-анализатор проектов 3MF (OrcaSlicer / Bambu Studio / PrusaSlicer / Cura)
— серверная утилита без UI: вес филамента и время печати по плитам

Примеры:
  python cli_analyzer.py project.3mf --json
  python cli_analyzer.py a.3mf b.3mf --material "Proto PLA" --workers 2 --text
  python cli_analyzer.py big.3mf --deadline 20 --set estimation.complexity_factor=1.57

Ключевые гарантии:
• Каждый файл анализируется независимо (никакого общего состояния).
• Если слайсер оставил свои итоги (вес/время) — они главнее геометрической оценки.
• Поддержка calibration.json и materials.json (+ точечные override'ы флагом --set).
• Параллель по файлам (--workers N) с детерминированным порядком вывода.


=============================
Кратко для backend-разработчика
=============================
Вход: пути к .3mf. Выход: JSON (--json) либо текст (по умолчанию/--text).
Коды возврата: 0 — успех; 1 — хотя бы один файл не разобран; 2 — ошибка конфигурации/аргументов.

Стабильный JSON-контракт (--json):
  {
    "success": <bool>,
    "count": <int>,                 # число файлов во входе
    "files": [
      {
        "file": "<имя файла>",
        "slicer_data": {
          "plates": [
            {"plate_id": "plate_1", "plate_name": "Plate 1",
             "filament_weight_g": <float>, "print_hours": <float>,
             "layer_height_mm": <float>, "infill_pct": <int>, "models": [<str>, ...]},
            ...
          ],
          "total_weight_g": <float>,
          "total_time_h": <float>
        },
        "warnings": [{"kind": "<вид>", "message": "<текст>", "path": "<запись архива>"?}, ...],
        "errors":   [...],
        "config_found": <bool>,
        "real_values_found": <bool>,
        "models_found": <int>,
        "files_inspected": [<str>, ...],
        "strategy": "real|partial_real_weight|partial_real_time|geometry|emergency|fallback|none",
        "elapsed_s": <float>,
        "plate_summaries": [        # итоги слайсера по плитам (slice_info.config / plate_<n>.gcode)
          {"plate_index": <int>, "weight_g": <float|null>, "hours": <float|null>, "source": "<запись>",
           "filaments": [{"index": <int>, "weight_g": <float>, "filament_type": "<str>",
                          "profile": "<str>", "colour": "<str>"}, ...]},
          ...
        ]
      },
      ...
    ],
    "summary": {"total_weight_g": <float>, "total_time_h": <float>, "plates": <int>},
    "errors": [{"file": "<имя>", "error": "<текст>"}, ...],
    "count_ok": <int>,
    "count_failed": <int>,
    "time_s": <float>
  }

Конфиги (calibration.json / materials.json):
  • По умолчанию берутся из cwd (если там есть calibration.json), иначе рядом со скриптом.
  • --config-dir — явная папка (файлы обязаны существовать).
  • Переопределять отдельные параметры можно флагом --set key.path=val.
"""
from __future__ import annotations

import os, sys, json, time, argparse, logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import List, Tuple

import analysis_core as analysis
import core_calc as core

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# ---------- Утилиты ----------
def set_by_dotted_path(d: dict, path: str, value):
    """Устанавливает значение по точечному пути (например, 'estimation.complexity_factor'). Создаёт вложенные словари при необходимости."""
    keys = path.split('.')
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value


def _coerce_scalar(v: str):
    low = v.lower()
    if low in ('true', 'false'):
        return low == 'true'
    try:
        return float(v) if ('.' in v or 'e' in low) else int(v)
    except ValueError:
        return v


def parse_kv_override(pairs):
    """Парсит список key=val оверрайдов из CLI (--set). Пытается привести val к bool/int/float, иначе оставляет строкой."""
    out = {}
    for kv in pairs or []:
        if '=' not in kv:
            raise ValueError(f"Неверный формат override '{kv}', нужен key=val")
        k, v = kv.split('=', 1)
        k = k.strip()
        if not k or any(not part for part in k.split('.')):
            raise ValueError(f"Пустой ключ в override '{kv}'")
        set_by_dotted_path(out, k, _coerce_scalar(v.strip()))
    return out


# ---------- Загрузка конфигов ----------
class ConfigError(Exception):
    """Ошибка конфигурации CLI (нет файла, неверный JSON, валидация и т.д.)."""


def resolve_config_paths(config_dir: str | None = None) -> Tuple[str, str]:
    """Определяет пути к calibration.json и materials.json по config_dir/cwd/директории скрипта."""
    if config_dir:
        base_dir = os.path.abspath(os.path.expanduser(config_dir))
    else:
        cwd = os.getcwd()
        if os.path.exists(os.path.join(cwd, "calibration.json")):
            base_dir = cwd
        else:
            base_dir = BASE_DIR
    return (
        core.get_default_calibration_path(base_dir),
        core.get_default_materials_path(base_dir),
    )


def _json_error(name: str, e: json.JSONDecodeError) -> ConfigError:
    return ConfigError(f"{name}: ошибка JSON ({e.msg}, строка {e.lineno}, колонка {e.colno})")


def load_configs_via_core(config_dir: str | None, override: dict | None = None) -> Tuple[dict, dict, str, str]:
    """
    Загружает calibration/materials через core_calc как единую точку правды.
    Без --config-dir отсутствующий файл -> встроенные дефолты (с заметкой в stderr).
    """
    calibration_path, materials_path = resolve_config_paths(config_dir)
    strict = bool(config_dir)

    try:
        calibration = core.load_calibration_json(calibration_path, base=core.DEFAULT_CALIBRATION, override=override)
    except FileNotFoundError:
        if strict:
            raise ConfigError(f"Файл конфигурации не найден: {calibration_path}") from None
        print(f"[cli] {calibration_path} not found, using built-in calibration", file=sys.stderr)
        calibration = core.calibration_with(override)
        calibration_path = "(built-in)"
    except json.JSONDecodeError as e:
        raise _json_error("calibration.json", e) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None

    try:
        density = core.load_materials_json(materials_path)
    except FileNotFoundError:
        if strict:
            raise ConfigError(f"Файл конфигурации не найден: {materials_path}") from None
        density = {}
        materials_path = "(none)"
    except json.JSONDecodeError as e:
        raise _json_error("materials.json", e) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None
    return calibration, density, calibration_path, materials_path


def finalize_json_payload(payload: dict, errors: List[dict], count_ok: int) -> dict:
    """Добавляет поля ошибок и итоговые счетчики для JSON-вывода."""
    payload["errors"] = list(errors)
    payload["count_failed"] = len(errors)
    payload["count_ok"] = int(count_ok)
    payload["success"] = len(errors) == 0
    return payload


# ---------- Анализ одного файла ----------
def _analyze_one_file(path: str, *, calibration: dict, deadline_s: float | None, parallel: bool) -> dict:
    """Процесс-воркер: анализ одного файла. Возвращает JSON-готовый dict."""
    info = analysis.analyze_file(path, calibration=calibration, deadline_s=deadline_s, parallel=parallel)
    out = {"file": os.path.basename(path)}
    out.update(info.to_dict())
    return out


def analyze_files(
    files: List[str],
    *,
    calibration: dict,
    deadline_s: float | None = None,
    parallel: bool = False,
    workers: int = 1,
    errors: List[dict] | None = None,
) -> dict:
    """
    Анализ набора файлов с опциональной параллелью по процессам.
    Результат: JSON payload (для --json его же рендерит текстовый вывод).
    """
    t0 = time.time()
    results: List[dict] = []
    errors = errors if errors is not None else []
    file_list = list(files)
    kw = dict(calibration=calibration, deadline_s=deadline_s, parallel=parallel)

    if workers and workers > 1 and len(file_list) > 1:
        with ProcessPoolExecutor(max_workers=int(workers)) as ex:
            futs = {ex.submit(_analyze_one_file, p, **kw): p for p in file_list}
            for fut in as_completed(futs):
                path = futs[fut]
                try:
                    results.append(fut.result())
                except Exception as exc:
                    errors.append({"file": os.path.basename(path), "error": str(exc)})
        # стабильный порядок для вывода/тестов
        results.sort(key=lambda r: r["file"])
    else:
        for p in file_list:
            try:
                results.append(_analyze_one_file(p, **kw))
            except Exception as exc:
                errors.append({"file": os.path.basename(p), "error": str(exc)})

    # файлы с ошибками анализа (битый архив, сбой) тоже считаются неуспешными
    for r in results:
        for err in r.get("errors") or []:
            errors.append({"file": r["file"], "error": err.get("message", "")})
    failed = {e["file"] for e in errors}
    count_ok = sum(1 for r in results if r["file"] not in failed)

    payload = {
        "success": True,
        "count": len(file_list),
        "files": results,
        "summary": {
            "total_weight_g": round(sum(r["slicer_data"]["total_weight_g"] for r in results), 2),
            "total_time_h": round(sum(r["slicer_data"]["total_time_h"] for r in results), 1),
            "plates": sum(len(r["slicer_data"]["plates"]) for r in results),
        },
        "time_s": time.time() - t0,
    }
    return finalize_json_payload(payload, errors, count_ok)


# ---------- Текстовый отчёт ----------
def render_text(payload: dict, *, show_warnings: bool = True) -> str:
    lines: List[str] = []
    for r in payload.get("files", []):
        sd = r["slicer_data"]
        lines.append(f"Файл: {r['file']}\n")
        lines.append(f"• Конфиг слайсера: {'найден' if r['config_found'] else 'нет'} | "
                     f"итоги слайсера: {'да' if r['real_values_found'] else 'нет'} | "
                     f"моделей: {r['models_found']} | стратегия: {r['strategy']}\n")
        for p in sd["plates"]:
            lines.append(f"  {p['plate_name']:<14}{p['filament_weight_g']:>9.2f} г  {core._hm(p['print_hours']):>9}"
                         f"  слой {p['layer_height_mm']:.2f} мм, заполнение {p['infill_pct']}%"
                         f"  [{', '.join(p['models'])}]\n")
        lines.append("-" * 42 + "\n")
        lines.append(f"ИТОГО: {sd['total_weight_g']:.2f} г | {core._hm(sd['total_time_h'])}\n")
        if show_warnings:
            for w in r.get("warnings", []):
                lines.append(f"  ! {w['message']}\n")
        for e in r.get("errors", []):
            lines.append(f"  ✗ {e['message']}\n")
        lines.append("\n")
    if len(payload.get("files", [])) > 1:
        s = payload["summary"]
        lines.append(f"Всего ({len(payload['files'])} файлов, {s['plates']} плит): "
                     f"{s['total_weight_g']:.2f} г | {core._hm(s['total_time_h'])}\n")
    lines.append(f"Время анализа: {payload.get('time_s', 0.0):.4f} с\n")
    return "".join(lines).rstrip()


# ---------- CLI ----------
def _setup_logging(verbosity: int) -> None:
    # диагностика и так попадает в вывод; без -v в stderr только ошибки
    level = logging.ERROR
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: List[str] | None = None):
    """Точка входа CLI. Парсит аргументы, загружает конфиги, вызывает analyze_files и печатает результат."""
    # Windows/CP1251 safe output: не падаем на спецсимволах
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    ap = argparse.ArgumentParser(description="Анализ проектов 3MF: вес филамента и время печати по плитам")
    ap.add_argument('files', nargs='+', help='Пути к проектам .3mf')
    ap.add_argument('--set', dest='overrides', action='append',
                    help='Переопределить параметры calibration (format: key=val, напр. estimation.complexity_factor=1.57). Можно несколько раз.')
    ap.add_argument('--config-dir', default=None, help='Папка с calibration.json и materials.json (по умолчанию: cwd или рядом со скриптом)')
    ap.add_argument('--material', required=False, help='Материал из materials.json: его плотность заменяет дефолтную (плотность из проекта главнее)')
    ap.add_argument('--deadline', type=float, default=None, help='Лимит времени на анализ одного файла, секунды')
    ap.add_argument('--parallel', action='store_true', help='Читать конфиг/плиты/геометрию одного файла в потоках')
    ap.add_argument('--workers', type=int, default=1, help='Процессы для параллельной обработки файлов (>1 — включить мультипроцессинг)')

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument('--json', action='store_true', help='Вывод в JSON')
    fmt.add_argument('--text', action='store_true', help='Текстовый отчёт (по умолчанию)')
    ap.add_argument('--quiet-warnings', dest='show_warnings', action='store_false', help='Не печатать предупреждения в текстовом отчёте')
    ap.add_argument('-v', '--verbose', action='count', default=0, help='Логирование в stderr (-v info, -vv debug)')

    args = ap.parse_args(argv)
    _setup_logging(args.verbose)

    if args.deadline is not None and not (args.deadline > 0):
        print(f"Неверное значение --deadline: {args.deadline}", file=sys.stderr)
        sys.exit(2)

    try:
        overrides = parse_kv_override(args.overrides)
    except ValueError as e:
        print(f"Неверный формат --set: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        calibration, dens, calibration_path, materials_path = load_configs_via_core(args.config_dir, overrides)
    except ConfigError as e:
        print(f"Ошибка конфигурации: {e}", file=sys.stderr)
        sys.exit(2)

    print(f"[cli] using calibration: {calibration_path}", file=sys.stderr)
    print(f"[cli] using materials  : {materials_path}", file=sys.stderr)

    # выбор материала: подменяем дефолтную плотность; явная плотность из проекта всё равно выиграет
    if args.material:
        if args.material not in dens:
            print(f"Материал '{args.material}' не найден в {materials_path}", file=sys.stderr)
            sys.exit(2)
        set_by_dotted_path(calibration, "defaults.filament_density", dens[args.material])

    errors: List[dict] = []
    payload = analyze_files(
        args.files,
        calibration=calibration,
        deadline_s=args.deadline,
        parallel=bool(args.parallel),
        workers=int(max(1, args.workers)),
        errors=errors,
    )

    if errors and not args.json:
        for err in errors:
            print(f"[cli] файл {err.get('file')}: {err.get('error')}", file=sys.stderr)

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        print(render_text(payload, show_warnings=args.show_warnings))

    if errors:
        sys.exit(1)


if __name__ == '__main__':
    main()
