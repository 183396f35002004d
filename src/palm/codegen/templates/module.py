from mako.template import Template

# Client module for one component. `state` maps slot ids to containers with the
# same mutation API as palm.state.StateCell.
MODULE_TEMPLATE = Template(
	"""/**
 * Generated by palm${" from " + source_name if source_name else ""}.
 * Component: ${component_comment}
 */

export function mount(root, initial) {
  "use strict";
  if (!root) {
    console.warn("Palm: mount root is missing for component", ${component_id_json});
    return { state: {}, unmount() {} };
  }

  const componentId = ${component_id_json};
  const ACTION_ATTR = ${attrs["action"]};
  const COMPONENT_ATTR = ${attrs["component"]};
  const ARGS_ATTR = ${attrs["args"]};
  const BIND_ATTR = ${attrs["bind"]};

  const state = {};
  const actions = {};
  const cleanups = [];
  const exposed = [];

  const seeded = {};
  const initialStates = initial && Array.isArray(initial.states) ? initial.states : [];
  for (const entry of initialStates) {
    if (entry && typeof entry.id === "string") {
      seeded[entry.id] = entry.value;
    }
  }
  function hasSeed(id) {
    return Object.prototype.hasOwnProperty.call(seeded, id);
  }
  function seed(id, fallback) {
    return hasSeed(id) ? seeded[id] : fallback;
  }

  // State
% for cell in states:
%   if cell["global_key_json"] is not None:
  state[${cell["id_json"]}] = globalState(${cell["global_key_json"]}, seed(${cell["id_json"]}, ${cell["value_json"]}), hasSeed(${cell["id_json"]}));
%   else:
  state[${cell["id_json"]}] = createState(seed(${cell["id_json"]}, ${cell["value_json"]}));
%   endif
% endfor
% if computed:

  // Computed
% endif
% for cell in computed:
  (function () {
    const recompute = () => {
      let next;
      try {
        next = ${cell["expression"]};
      } catch (err) {
        console.error("Palm: computed error", ${cell["id_json"]}, err);
        return;
      }
      if (!valuesEqual(state[${cell["id_json"]}].get(), next)) {
        state[${cell["id_json"]}].set(next);
      }
    };
%   for dep in cell["dependencies"]:
    if (state[${dep}]) cleanups.push(state[${dep}].subscribe(recompute));
%   endfor
  })();
% endfor
% if actions:

  // Actions
% endif
% for action in actions:
  actions[${action["name_json"]}] = function () {
%   for line in action["lines"]:
    ${line}
%   endfor
  };
% endfor
% if effects:

  // Effects
% endif
% for effect in effects:
  (function () {
    const run = () => {
      try {
        ${effect["expression"]};
      } catch (err) {
        console.error("Palm: effect error", ${effect["id_json"]}, err);
      }
    };
%   for dep in effect["dependencies"]:
    if (state[${dep}]) cleanups.push(state[${dep}].subscribe(run));
%   endfor
  })();
% endfor

  // Click wiring
  for (const el of root.querySelectorAll("[" + ACTION_ATTR + "]")) {
    const actionName = el.getAttribute(ACTION_ATTR);
    const owner = el.getAttribute(COMPONENT_ATTR);
    if (owner && owner !== componentId) continue;
    const handler = actions[actionName];
    if (!handler) continue;
    const listener = (event) => {
      if (event) event.preventDefault();
      let args = [];
      const rawArgs = el.getAttribute(ARGS_ATTR);
      if (rawArgs) {
        try {
          const parsed = JSON.parse(rawArgs);
          args = Array.isArray(parsed) ? parsed : [parsed];
        } catch (err) {
          console.warn("Palm: could not parse action arguments", rawArgs, err);
        }
      }
      try {
        handler.apply(null, args);
      } catch (err) {
        console.error("Palm: action error", actionName, err);
      }
    };
    el.removeAttribute("onclick");
    el.addEventListener("click", listener);
    cleanups.push(() => el.removeEventListener("click", listener));
  }

  // Bind wiring
  const pending = new Map();
  let frameScheduled = false;
  const requestFrame = typeof requestAnimationFrame === "function"
    ? requestAnimationFrame
    : (fn) => setTimeout(fn, 16);
  function flush() {
    frameScheduled = false;
    const queued = Array.from(pending.values());
    pending.clear();
    for (const update of queued) {
      try {
        update();
      } catch (err) {
        console.error("Palm: update error", err);
      }
    }
  }
  function scheduleUpdate(key, update) {
% if batch_updates:
    pending.set(key, update);
    if (!frameScheduled) {
      frameScheduled = true;
      requestFrame(flush);
    }
% else:
    pending.delete(key);
    try {
      update();
    } catch (err) {
      console.error("Palm: update error", err);
    }
% endif
  }

  for (const el of root.querySelectorAll("[" + BIND_ATTR + "]")) {
    const token = el.getAttribute(BIND_ATTR) || "";
    const sep = token.indexOf("::");
    if (sep < 0) continue;
    if (token.slice(0, sep) !== componentId) continue;
    const cell = state[token.slice(sep + 2)];
    if (!cell) continue;
    const render = (value) => {
      el.textContent = value === null || value === undefined ? "" : String(value);
    };
    render(cell.get());
    cleanups.push(cell.subscribe((value) => scheduleUpdate(el, () => render(value))));
  }
% if expose_globals:

  // Globals for inline handlers
  if (typeof window !== "undefined") {
    const registryKey = "__PALM_COMPONENT_" + componentId + "__";
    window[registryKey] = { state, actions };
    exposed.push(registryKey);
    for (const name of Object.keys(actions)) {
      window[name] = function () {
        return actions[name].apply(null, arguments);
      };
      exposed.push(name);
    }
  }
% endif
% if mount_hooks:

  // Mount hooks
% endif
% for hook in mount_hooks:
  try {
    ${hook};
  } catch (err) {
    console.error("Palm: mount hook error", err);
  }
% endfor

  let mounted = true;
  return {
    state,
    actions,
    unmount() {
      if (!mounted) return;
      mounted = false;
% for hook in unmount_hooks:
      try {
        ${hook};
      } catch (err) {
        console.error("Palm: unmount hook error", err);
      }
% endfor
      for (const cleanup of cleanups.splice(0)) {
        try {
          cleanup();
        } catch (err) {
          console.error("Palm: cleanup error", err);
        }
      }
      pending.clear();
      if (typeof window !== "undefined") {
        for (const name of exposed.splice(0)) {
          delete window[name];
        }
      }
    },
  };
}

function valuesEqual(a, b) {
  if (a === b) return true;
  if (a === null || b === null || typeof a !== "object" || typeof b !== "object") {
    return false;
  }
  try {
    return JSON.stringify(a) === JSON.stringify(b);
  } catch (err) {
    return false;
  }
}

// Python semantics for `in`, `round` and `str` in compiled expressions
function palmContains(container, item) {
  if (container === null || container === undefined) return false;
  if (typeof container === "string" || Array.isArray(container)) {
    return container.includes(item);
  }
  if (container instanceof Set || container instanceof Map) return container.has(item);
  if (typeof container === "object") {
    return Object.prototype.hasOwnProperty.call(container, item);
  }
  return false;
}

function palmRound(value, ndigits) {
  const factor = 10 ** (ndigits ?? 0);
  const scaled = value * factor;
  const floor = Math.floor(scaled);
  const diff = scaled - floor;
  let rounded = floor;
  if (diff > 0.5 || (diff === 0.5 && floor % 2 !== 0)) rounded = floor + 1;
  return ndigits === undefined ? rounded : rounded / factor;
}

function palmStr(value) {
  if (value === true) return "True";
  if (value === false) return "False";
  if (value === null || value === undefined) return "None";
  return String(value);
}

function normalizeIndex(list, key) {
  if (typeof key !== "number" || !Number.isInteger(key)) return -1;
  return key < 0 ? list.length + key : key;
}

function createState(initial) {
  let value = initial;
  const subscribers = new Set();
  const container = {
    get() {
      return value;
    },
    set(next) {
      if (valuesEqual(value, next)) return;
      value = next;
      for (const fn of Array.from(subscribers)) {
        try {
          fn(value);
        } catch (err) {
          console.error("Palm: subscriber error", err);
        }
      }
    },
    subscribe(fn) {
      subscribers.add(fn);
      return () => {
        subscribers.delete(fn);
      };
    },
    increment(step = 1) {
      container.set((value ?? 0) + step);
    },
    decrement(step = 1) {
      container.set((value ?? 0) - step);
    },
    toggle() {
      container.set(!value);
    },
    push(item) {
      const base = Array.isArray(value) ? value : [];
      container.set([...base, item]);
    },
    pop() {
      if (!Array.isArray(value) || value.length === 0) return null;
      const item = value[value.length - 1];
      container.set(value.slice(0, -1));
      return item;
    },
    update(key, item) {
      if (Array.isArray(value)) {
        const index = normalizeIndex(value, key);
        if (index < 0) return;
        const next = value.slice();
        while (next.length < index) next.push(null);
        next[index] = item;
        container.set(next);
      } else if (value !== null && typeof value === "object") {
        container.set({ ...value, [key]: item });
      } else {
        container.set({ [key]: item });
      }
    },
    remove(key) {
      if (Array.isArray(value)) {
        const index = normalizeIndex(value, key);
        if (index < 0 || index >= value.length) return;
        const next = value.slice();
        next.splice(index, 1);
        container.set(next);
      } else if (value !== null && typeof value === "object") {
        if (!Object.prototype.hasOwnProperty.call(value, key)) return;
        const next = { ...value };
        delete next[key];
        container.set(next);
      }
    },
    merge(values) {
      if (Array.isArray(value) && Array.isArray(values)) {
        container.set([...value, ...values]);
      } else if (
        value !== null && typeof value === "object" && !Array.isArray(value)
        && values !== null && typeof values === "object" && !Array.isArray(values)
      ) {
        container.set({ ...value, ...values });
      } else {
        container.set(values);
      }
    },
  };
  return container;
}

// Global cells outlive a component. A remount with a server seed pushes the
// seed into the shared container so every subscriber sees it.
function globalState(key, initial, reseed) {
  const root = typeof globalThis !== "undefined" ? globalThis : window;
  const registry = root.__PALM_GLOBAL_STATE__ || (root.__PALM_GLOBAL_STATE__ = {});
  if (!registry[key]) {
    registry[key] = createState(initial);
  } else if (reseed) {
    registry[key].set(initial);
  }
  return registry[key];
}
"""
)
