from __future__ import annotations

AGENT_SCRIPT_VERSION = "2"

# Served at AGENT_PATH by the proxy and loaded before any application script.
# Idempotent. It exposes:
# - $$instrumentPaths(paths): wrap the object at each access string in a Proxy
#   that records a stack trace whenever the object grows (new property, array
#   growth, Map.set/Set.add of a new key). Reassignments of the path are
#   re-wrapped when the parent property is configurable.
# - $$getStackTraces(): JSON string {accessString: {property: [stack, ...]}}.
# Paths that do not resolve to an object are skipped (logged to the console).
# Functions on the recording path carry the $$deuterium name prefix; recorded
# stacks drop every frame with that prefix.
AGENT_SCRIPT_SOURCE = r"""
(() => {
  const VERSION = "2";
  const g = globalThis;
  if (g.$$deuteriumAgent && g.$$deuteriumAgent.version === VERSION) {
    return;
  }

  const MAX_STACKS_PER_PROP = 50;
  const FRAME_MARKER = "$$deuterium";
  const traces = Object.create(null);
  const wrapped = new WeakMap();
  const warn = g.console && typeof g.console.warn === "function" ? g.console.warn.bind(g.console) : () => {};
  const hasOwn = (obj, prop) => Object.prototype.hasOwnProperty.call(obj, prop);

  function $$deuteriumCaptureStack() {
    return String(new Error().stack || "")
      .split("\n")
      .map((l) => l.trim())
      .filter((l) => l && l !== "Error" && l.indexOf(FRAME_MARKER) === -1)
      .join("\n");
  }

  function $$deuteriumRecord(path, prop) {
    const byProp = traces[path] || (traces[path] = Object.create(null));
    const key = typeof prop === "symbol" ? prop.toString() : String(prop);
    const list = byProp[key] || (byProp[key] = []);
    if (list.length < MAX_STACKS_PER_PROP) {
      list.push($$deuteriumCaptureStack());
    }
  }

  function splitPath(path) {
    let m = /^(.*)\.([A-Za-z_$][\w$]*)$/.exec(path);
    if (m) return [m[1], m[2]];
    m = /^(.*)\[\s*(\d+)\s*\]$/.exec(path);
    if (m) return [m[1], Number(m[2])];
    m = /^(.*)\[\s*("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')\s*\]$/.exec(path);
    if (m) return [m[1], Function("return " + m[2])()];
    return null;
  }

  function evaluate(expr) {
    return Function("return (" + expr + ");")();
  }

  function patchCollection(path, target) {
    if (target instanceof Map) {
      const origSet = target.set;
      target.set = function $$deuteriumMapSet(k, v) {
        if (!this.has(k)) $$deuteriumRecord(path, "set");
        return origSet.call(this, k, v);
      };
    } else if (target instanceof Set) {
      const origAdd = target.add;
      target.add = function $$deuteriumSetAdd(v) {
        if (!this.has(v)) $$deuteriumRecord(path, "add");
        return origAdd.call(this, v);
      };
    }
  }

  function isObject(v) {
    return v !== null && (typeof v === "object" || typeof v === "function");
  }

  function wrap(path, target) {
    if (!isObject(target)) {
      return target;
    }
    if (wrapped.has(target)) {
      return wrapped.get(target);
    }
    if (target instanceof Map || target instanceof Set) {
      // Proxies break Map/Set internal slots; patch the instance instead.
      patchCollection(path, target);
      wrapped.set(target, target);
      return target;
    }
    const proxy = new Proxy(target, {
      // Forwarding to the target without the proxy as receiver keeps one
      // assignment from also reaching defineProperty below.
      set: function $$deuteriumSet(obj, prop, value) {
        if (!hasOwn(obj, prop)) $$deuteriumRecord(path, prop);
        return Reflect.set(obj, prop, value);
      },
      defineProperty: function $$deuteriumDefine(obj, prop, desc) {
        if (!hasOwn(obj, prop)) $$deuteriumRecord(path, prop);
        return Reflect.defineProperty(obj, prop, desc);
      },
    });
    wrapped.set(target, proxy);
    wrapped.set(proxy, proxy);
    return proxy;
  }

  function instrumentPath(path) {
    const parts = splitPath(path);
    if (!parts) {
      warn("[deuterium] cannot instrument path", path);
      return false;
    }
    let parent;
    try {
      parent = evaluate(parts[0]);
    } catch (e) {
      warn("[deuterium] cannot resolve", parts[0], e);
      return false;
    }
    if (!isObject(parent)) {
      return false;
    }
    const key = parts[1];
    if (!isObject(parent[key])) {
      warn("[deuterium] not an object", path);
      return false;
    }
    let current = wrap(path, parent[key]);
    const desc = Object.getOwnPropertyDescriptor(parent, key);
    if (desc && desc.configurable && "value" in desc) {
      Object.defineProperty(parent, key, {
        configurable: true,
        enumerable: desc.enumerable,
        get() {
          return current;
        },
        set(v) {
          current = wrap(path, v);
        },
      });
    } else {
      try {
        parent[key] = current;
      } catch (e) {
        warn("[deuterium] cannot rebind", path, e);
      }
    }
    return true;
  }

  g.$$instrumentPaths = function (paths) {
    let ok = 0;
    for (const p of paths || []) {
      if (instrumentPath(String(p))) ok++;
    }
    return ok;
  };

  g.$$getStackTraces = function () {
    return JSON.stringify(traces);
  };

  g.$$deuteriumAgent = { version: VERSION };
})();
"""

__all__ = ["AGENT_SCRIPT_SOURCE", "AGENT_SCRIPT_VERSION"]
