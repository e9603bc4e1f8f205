#!/usr/bin/env python3
"""
MongoDB Agent Gateway - Diagnostic Script
=========================================

Usage:
    python diagnose.py <collection> ['<filter json>']

Example:
    python diagnose.py orders '{"status": {"$regex": "ship"}}'

Calls the running gateway (GATEWAY_URL, default http://localhost:8000)
and prints the inferred schema, the validation verdict for the filter,
and a masked sample of matching documents.
"""

import json
import os
import sys

import requests

BASE_URL = os.getenv("GATEWAY_URL", "http://localhost:8000")

SEPARATOR = "=" * 70
DASH = "-" * 40


def colour(text, code):
    return f"\033[{code}m{text}\033[0m"


def green(t):  return colour(t, 32)
def red(t):    return colour(t, 31)
def yellow(t): return colour(t, 33)
def cyan(t):   return colour(t, 36)
def bold(t):   return colour(t, 1)


def _post(path, payload, timeout=30):
    resp = requests.post(f"{BASE_URL}{path}", json=payload, timeout=timeout)
    return resp.status_code, resp.json()


def diagnose_schema(collection):
    print(f"\n{SEPARATOR}")
    print(bold("STEP 1 - SCHEMA INFERENCE  (POST /infer-schema)"))
    print(SEPARATOR)

    try:
        status, data = _post("/infer-schema", {"collection_name": collection})
    except requests.RequestException as e:
        print(red(f"  ERROR: {e}"))
        return None

    if status != 200:
        print(red(f"  FAIL ({status}) - {data.get('message')}"))
        return None

    print(f"  {bold('Documents:')} {data['document_count']}   "
          f"{bold('Sampled:')} {data['sample_size']}")
    print(cyan("\n  Fields:"))
    for path, info in sorted(data["fields"].items()):
        line = f"    {green(path)}: {', '.join(info['types'])}  freq={info['frequency']}"
        if info.get("is_polymorphic"):
            line += "  " + yellow("polymorphic")
        if info.get("enum_values"):
            line += f"  enum={info['enum_values']}"
        print(line)
    return data


def diagnose_filter(collection, filter_text):
    print(f"\n{SEPARATOR}")
    print(bold("STEP 2 - FILTER VALIDATION  (POST /validate-query)"))
    print(f"  Filter: {filter_text}")
    print(SEPARATOR)

    try:
        status, data = _post(
            "/validate-query",
            {"query": filter_text, "collection_name": collection},
        )
    except requests.RequestException as e:
        print(red(f"  ERROR: {e}"))
        return False

    if status != 200:
        print(red(f"  FAIL ({status}) - {data.get('message')}"))
        return False

    if not data["valid"]:
        print(f"    {red('INVALID')} - {data['error']}")
        return False

    print(f"    {green('VALID')}")
    for w in data.get("warnings", []):
        print(f"    {yellow('warning: ' + w)}")
    return True


def diagnose_sample(collection, filter_text):
    print(f"\n{SEPARATOR}")
    print(bold("STEP 3 - MASKED SAMPLE  (POST /sample-data)"))
    print(SEPARATOR)

    payload = {"collection_name": collection, "limit": 3}
    if filter_text and filter_text.strip() != "{}":
        payload["query"] = filter_text

    try:
        status, data = _post("/sample-data", payload)
    except requests.RequestException as e:
        print(red(f"  ERROR: {e}"))
        return

    if status != 200:
        print(red(f"  FAIL ({status}) - {data.get('message')}"))
        return

    if not data["documents"]:
        print(f"    {yellow('0 documents matched')}")
    for i, doc in enumerate(data["documents"], 1):
        print(f"    Doc {i}: {json.dumps(doc, default=str)[:300]}")


def main():
    if len(sys.argv) < 2:
        print(bold("MongoDB Agent Gateway Diagnostic Tool"))
        print()
        print("Usage:")
        print(f"  python {sys.argv[0]} <collection> ['<filter json>']")
        print()
        print(f"The gateway must be running at {BASE_URL}")
        sys.exit(1)

    collection = sys.argv[1]
    filter_text = sys.argv[2] if len(sys.argv) > 2 else "{}"

    try:
        r = requests.get(f"{BASE_URL}/health", timeout=3)
        health = r.json()
        print(green(f"Gateway is up (v{health.get('version', '?')}, "
                    f"connection: {health.get('connection', '?')})"))
    except requests.RequestException:
        print(red(f"Cannot reach gateway at {BASE_URL} - is uvicorn running?"))
        sys.exit(1)

    diagnose_schema(collection)
    if diagnose_filter(collection, filter_text):
        diagnose_sample(collection, filter_text)

    print(f"\n{SEPARATOR}")
    print(bold("DIAGNOSIS COMPLETE"))
    print(SEPARATOR)


if __name__ == "__main__":
    main()
