import threading

import pytest

from ecmodbus import coordinator
from ecmodbus import fan
from ecmodbus import procedures
from conftest import FakeTransport


@pytest.fixture
def runner(simulated):
    return procedures.ProcedureRunner(coordinator=simulated, step_delay=0, verify_delay=0)


def test_modbus_1_soft_match(runner):
    # The simulated fan powers up with a setpoint of 3000, not 0, which is only a warning
    result = runner.run('modbus-1')
    assert result.outcome == procedures.WARN
    assert [s.outcome for s in result.steps] == [procedures.PASS, procedures.PASS, procedures.WARN]
    assert 'mismatch' in result.steps[-1].message


def test_modbus_1_exact_match(runner, simfan):
    simfan.holding_registers[fan.SETPOINT] = 0
    assert runner.run('modbus-1').outcome == procedures.PASS


def test_modbus_2(runner):
    result = runner.run(procedures.PROCEDURES['modbus-2'])
    assert result.outcome == procedures.PASS
    assert result.procedure_id == 'modbus-2'


def test_modbus_3_restores_setpoint(runner, simfan):
    result = runner.run('modbus-3')
    assert result.outcome == procedures.PASS
    assert runner.context['setpoint_backup'] == 3000
    assert simfan.holding_registers[fan.SETPOINT] == 3000


def test_no_device(runner, simfan):
    simfan.enabled = False
    result = runner.run('modbus-2')
    assert result.outcome == procedures.FAIL
    assert 'timeout' in result.message


def test_failure_runs_restore_steps(runner, simfan):
    procedure = {'id':'verify-fail',
                 'steps':[{'type':'read_holding', 'slave_id':1, 'address':fan.SETPOINT, 'store_as':'backup'},
                          {'type':'write_holding', 'slave_id':1, 'address':fan.SETPOINT, 'value':5,
                           'verify_after_write':True, 'expect_after_write':6},
                          {'type':'read_input', 'slave_id':1, 'address':fan.IDENTIFICATION},
                          {'type':'restore_holding', 'slave_id':1, 'address':fan.SETPOINT, 'from':'backup'}]}
    result = runner.run(procedure)
    assert result.outcome == procedures.FAIL
    assert len(result.steps) == 2
    assert result.steps[-1].outcome == procedures.FAIL
    assert simfan.holding_registers[fan.SETPOINT] == 3000


def test_soft_fail_continues(runner, simfan):
    procedure = {'id':'soft',
                 'steps':[{'type':'read_holding', 'slave_id':2, 'address':fan.SETPOINT, 'soft_fail':True},
                          {'type':'read_input', 'slave_id':1, 'address':fan.IDENTIFICATION, 'expect':0x4242}]}
    result = runner.run(procedure)
    assert result.outcome == procedures.WARN
    assert [s.outcome for s in result.steps] == [procedures.WARN, procedures.PASS]


def test_strict_mismatch_fails(runner):
    procedure = {'id':'strict',
                 'steps':[{'type':'read_input', 'slave_id':1, 'address':fan.IDENTIFICATION, 'expect':0x1234}]}
    result = runner.run(procedure)
    assert result.outcome == procedures.FAIL
    assert 'expected 0x1234, got 0x4242' in result.message


def test_unknown_step(runner):
    assert runner.run({'id':'bad', 'steps':[{'type':'frobnicate'}]}).outcome == procedures.FAIL


def test_stop(runner):
    procedure = {'id':'slow',
                 'steps':[{'type':'delay', 'seconds':5.0},
                          {'type':'read_input', 'slave_id':1, 'address':fan.IDENTIFICATION}]}
    threading.Timer(0.05, runner.stop).start()
    result = runner.run(procedure)
    assert result.outcome == procedures.FAIL
    assert result.message == 'Test stopped'


@pytest.mark.parametrize('baudrate, parity, outcome', [(19200, 'E', procedures.PASS),
                                                       (9600, 'N', procedures.WARN)])
def test_comm_settings(baudrate, parity, outcome):
    conn = coordinator.RequestCoordinator(transport=FakeTransport(baudrate=baudrate, parity=parity))
    runner = procedures.ProcedureRunner(coordinator=conn, step_delay=0)
    result = runner.run({'id':'comm', 'steps':[{'type':'check_connection'}, {'type':'check_comm_settings'}]})
    assert result.outcome == outcome


def test_check_connection_fails():
    t = FakeTransport()
    t.connected = False
    runner = procedures.ProcedureRunner(coordinator=coordinator.RequestCoordinator(transport=t), step_delay=0)
    result = runner.run('modbus-2')
    assert result.outcome == procedures.FAIL
    assert len(result.steps) == 1
