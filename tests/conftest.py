# tests/conftest.py
"""
Shared sample modules, transformations and fixtures.
"""

import pytest

from waspect.module import ModuleContext
from waspect.transform import parse_transformation


# ── sample modules ───────────────────────────────────────────────────────────

IDENTITY_WAT = '(module (func $id (export "id") (param i32) (result i32) local.get 0))'

EXPORTS_WAT = '''
(module
  (func $id (export "id") (param i32) (result i32)
    local.get 0)
  (func $helper (result i32)
    i32.const 5)
  (func $main (export "main") (result i32)
    (call $helper)))
'''

RETURNS_WAT = '''
(module
  (func $value (export "value") (param i32) (result i32)
    (local.get 0))
  (func $effect (export "effect") (param i32)
    (drop (local.get 0))))
'''

CALLS_WAT = '''
(module
  (func $a (param i32) (result i32)
    (local.get 0))
  (func $b (result i32)
    (i32.const 1))
  (func $common (result i32)
    (i32.add (call $a (i32.const 1)) (call $b)))
  (func $only_a (result i32)
    (call $a (i32.const 2)))
  (func $only_b (result i32)
    (call $b)))
'''

TEMPLATE_WAT = '''
(module
  (func $sum (param i32 i32) (result i32)
    (i32.add (local.get 0) (local.get 1)))
  (func $double (param i32) (result i32)
    (i32.mul (local.get 0) (i32.const 2))))
'''

REPEATED_WAT = '''
(module
  (func $twice (param i32 i32) (result i32)
    (i32.mul (i32.add (local.get 0) (local.get 1)) (i32.add (local.get 0) (local.get 1))))
  (func $drops
    (drop (i32.const 1))
    (drop (i32.const 1))
    (drop (i32.const 1))
    (drop (i32.const 1))))
'''

ARGS_WAT = '''
(module
  (func $target (param i32 i32))
  (func $caller (param $x i32) (param $z i32) (local $y i32) (local $w i32)
    (call $target (local.get $x) (local.get $y))
    (call $target (local.get $y) (local.get $x))
    (call $target (local.get $z) (local.get $y))
    (call $target (i32.const 1) (local.get $y))))
'''

FLAT_WAT = '''
(module
  (type $t0 (func (param i32) (result i32)))
  (import "env" "print" (func $print (param i32)))
  (global $g (mut i32) (i32.const 7))
  (func $loop (type $t0) (param $n i32) (result i32) (local $acc i32)
    block $out
      loop $again
        local.get $n
        i32.eqz
        br_if $out
        local.get $acc
        local.get $n
        i32.add
        local.set $acc
        local.get $n
        i32.const 1
        i32.sub
        local.set $n
        br $again
      end
    end
    local.get $acc
    call $print
    local.get $acc)
  (export "loop" (func $loop))
  (start $init)
  (func $init
    ;; startup
    (global.set $g (i32.const 0))))
'''


# ── sample transformations ───────────────────────────────────────────────────

EMPTY_TRANSFORMATION = """
aspects:
  advices: {}
"""

EXPORTED_PREFIX_TRANSFORMATION = """
aspects:
  advices:
    prefix:
      pointcut: "() => func(* *(..), exported)"
      advice: "(i32.const 0)(drop) %this%"
"""

COUNTER_TRANSFORMATION = """
pointcuts:
  exported: "() => func(* * (..), exported)"
aspects:
  start: "(global.set %counter% (i32.const 5))"
  context:
    variables:
      counter: "i32 = 0"
    functions:
      log:
        args:
          - {name: value, type: i32}
        imported: {module: env, field: log}
      bump:
        args:
          - {name: step, type: i32}
        result: i32
        variables:
          tmp: "i32"
        code: "(local.set %tmp% (local.get %step%)) (i32.add (global.get %counter%) (local.get %tmp%))"
        exported: bump
  advices:
    count:
      pointcut: "() => exported()"
      advice: "(global.set %counter% (i32.add (global.get %counter%) (i32.const 1))) (call %log% (global.get %counter%)) %this%"
"""


# ── fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def exports_module():
    return ModuleContext.from_text(EXPORTS_WAT)


@pytest.fixture
def flat_module():
    return ModuleContext.from_text(FLAT_WAT)


@pytest.fixture
def args_module():
    return ModuleContext.from_text(ARGS_WAT)


@pytest.fixture
def counter_transformation():
    return parse_transformation(COUNTER_TRANSFORMATION)
