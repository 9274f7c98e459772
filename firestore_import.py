#!/usr/bin/env python3
"""Import a Firestore JSON export of the legacy browser app into the FitTrack API.

The export is a single JSON object with optional ``workouts``, ``weightLog``
and ``workout_plans`` lists. Legacy camelCase fields are mapped to the API
shape and every record is posted through the API.

Usage: python3 firestore_import.py <export.json> <api_url> <user_id> [profile_id]
"""
import sys, json, math, requests
from time import sleep


def _number(raw, default=None):
    """Parse a legacy form value. Blank, non-numeric and NaN give ``default``."""
    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if math.isnan(value) or math.isinf(value):
        return default
    return value


def _cardio(items):
    out = []
    for c in items or []:
        if not (c.get('type') or '').strip():
            continue
        out.append({
            'type': c['type'].strip(),
            # older records used `duration`
            'duration_minutes': _number(c.get('duration_minutes', c.get('duration')), 0.0),
            'distance': _number(c.get('distance'), 0.0),
        })
    return out


def _weights(items):
    out = []
    for ex in items or []:
        name = (ex.get('name') or '').strip()
        sets = [
            {'reps': _number(s.get('reps'), 0.0), 'weight': _number(s.get('weight'), 0.0)}
            for s in ex.get('sets') or []
        ]
        if name and sets:
            out.append({'name': name, 'sets': sets})
    return out


def normalize_workout(doc):
    workout = {
        'date': doc['date'],
        'cardio': _cardio(doc.get('cardio')),
        'weights': _weights(doc.get('weights')),
    }
    weight = _number(doc.get('current_weight', doc.get('currentWeight')))
    if weight is not None and weight > 0:
        workout['current_weight'] = weight
    return workout


def normalize_weight_entry(doc):
    weight = _number(doc.get('weight'))
    if weight is None or weight <= 0:
        return None
    return {'date': doc['date'], 'weight': weight}


def normalize_plan(doc):
    return {
        'name': (doc.get('name') or '').strip() or 'Untitled plan',
        'cardio': _cardio(doc.get('cardio')),
        'weights': _weights(doc.get('weights')),
    }


def _records(export):
    """Yield (path, body) per record; body is None for a record with no date."""
    for doc in export.get('workouts') or []:
        yield '/workouts', normalize_workout(doc) if doc.get('date') else None
    for doc in export.get('weightLog') or []:
        if not doc.get('date'):
            yield '/weight_log', None
            continue
        entry = normalize_weight_entry(doc)
        if entry is not None:
            yield '/weight_log', entry
    for doc in export.get('workout_plans') or []:
        yield '/plans', normalize_plan(doc)


def import_export(json_file, api_url, user_id, profile_id=None):
    if not api_url.startswith('http'):
        api_url = f'https://{api_url}'
    api_url = api_url.rstrip('/')

    headers = {'X-User-Id': user_id}
    if profile_id:
        headers['X-Profile-Id'] = profile_id

    print(f"Reading export: {json_file}")
    print(f"Target API: {api_url}")

    try:
        health = requests.get(f"{api_url}/health", timeout=10)
        health.raise_for_status()
        print("API is healthy\n")
    except requests.RequestException as e:
        print(f"Cannot connect: {e}")
        sys.exit(1)

    with open(json_file, 'r', encoding='utf-8') as f:
        export = json.load(f)

    records = list(_records(export))
    print(f"Found {len(records)} records\n")

    counts = {'imported': 0, 'failed': 0}
    for i, (path, body) in enumerate(records, 1):
        try:
            if body is None:
                raise ValueError("record has no date")
            response = requests.post(f"{api_url}{path}", json=body, headers=headers, timeout=10)
            response.raise_for_status()
            counts['imported'] += 1
        except (ValueError, requests.RequestException) as e:
            counts['failed'] += 1
            print(f"Failed record {i} ({path}): {e}")
            if counts['failed'] > 50:
                print("Too many failures, stopping")
                break
        if i % 10 == 0:
            sleep(0.5)

    print(f"\n{'='*60}")
    print(f"Imported: {counts['imported']}")
    print(f"Failed: {counts['failed']}")
    print(f"{'='*60}\n")
    return counts


if __name__ == "__main__":
    if len(sys.argv) not in (4, 5):
        print("Usage: python3 firestore_import.py <export.json> <api_url> <user_id> [profile_id]")
        sys.exit(1)
    import_export(*sys.argv[1:])
