#!/usr/bin/env python

"""
Step-based test procedures, run against one device to check that its Modbus implementation behaves.

A procedure is a dictionary with 'id', 'title', 'purpose', 'criteria' and 'steps' keys. Each step is a dictionary
with a 'type' key, and type-specific options:

    {'type':'check_connection'}
    {'type':'check_comm_settings'}
    {'type':'read_holding', 'slave_id':1, 'address':0xD001, 'expect':0, 'soft_match':True, 'store_as':'key'}
    {'type':'read_input', 'slave_id':1, 'address':0xD000, 'expect':0x4242}
    {'type':'write_holding', 'slave_id':1, 'address':0xD001, 'value':1, 'value_from':'key',
     'verify_after_write':True, 'expect_after_write':1}
    {'type':'restore_holding', 'slave_id':1, 'address':0xD001, 'from':'key'}
    {'type':'delay', 'seconds':0.5}
    {'type':'wait_countdown', 'seconds':5, 'message':'Power cycle the fan'}

Any step can also have 'label' (description for the log), 'soft_fail' (a failure of this step only gives a warning,
and the procedure carries on) and 'delay_after' (pause after the step, in seconds).

'soft_match' means a read that returns the wrong value only gives a warning - communications worked, so it's not
a failure. If any step fails, the procedure stops, and all of its restore_holding steps are run to put the device
back the way it was.

Every procedure, and every step, ends with one of three outcomes - PASS, WARN or FAIL.
"""

import logging
import threading
import time

from ecmodbus import fan
from ecmodbus import framing
from ecmodbus.errors import NotConnected

PASS = 'PASS'
WARN = 'WARN'
FAIL = 'FAIL'

STEP_DELAY = 0.3     # Default pause after each step, in seconds
VERIFY_DELAY = 0.2   # Pause between a write and the read-back to verify it, in seconds

RECOMMENDED_BAUDRATE = 19200
RECOMMENDED_PARITY = 'E'

PROCEDURES = {
    'modbus-1': {'id':'modbus-1',
                 'title':'FC03 Read Holding Register',
                 'purpose':'Check the response to a Read Holding Register [0x03] command.',
                 'criteria':'FC03 reply received, with Value = 0x0000 (Setpoint = 0)',
                 'steps':[{'type':'check_connection'},
                          {'type':'check_comm_settings'},
                          {'type':'read_holding',
                           'slave_id':1,
                           'address':fan.SETPOINT,
                           'label':'FC03 - read Setpoint [0xD001], TX: 01 03 D0 01 00 01 ED 0A',
                           'expect':0x0000,
                           'soft_match':True}]},   # Setpoint might not be zero on a used fan
    'modbus-2': {'id':'modbus-2',
                 'title':'FC04 Read Input Register',
                 'purpose':'Check the response to a Read Input Register [0x04] command.',
                 'criteria':'FC04 reply received, with Value = 0x4242 (Identification)',
                 'steps':[{'type':'check_connection'},
                          {'type':'check_comm_settings'},
                          {'type':'read_input',
                           'slave_id':1,
                           'address':fan.IDENTIFICATION,
                           'label':'FC04 - read Identification [0xD000], TX: 01 04 D0 00 00 01 09 0A',
                           'expect':0x4242}]},
    'modbus-3': {'id':'modbus-3',
                 'title':'FC06 Write Single Register',
                 'purpose':'Check the response to a Write Single Register [0x06] command.',
                 'criteria':'FC06 reply echoes the request',
                 'steps':[{'type':'check_connection'},
                          {'type':'check_comm_settings'},
                          {'type':'read_holding',
                           'slave_id':1,
                           'address':fan.SETPOINT,
                           'label':'FC03 - back up the current Setpoint [0xD001]',
                           'store_as':'setpoint_backup',
                           'soft_fail':True},
                          {'type':'write_holding',
                           'slave_id':1,
                           'address':fan.SETPOINT,
                           'value':1,
                           'label':'FC06 - write Setpoint [0xD001] = 1, TX: 01 06 D0 01 00 01 21 0A',
                           'verify_after_write':True,
                           'expect_after_write':1},
                          {'type':'restore_holding',
                           'slave_id':1,
                           'address':fan.SETPOINT,
                           'from':'setpoint_backup',
                           'label':'Restore the original Setpoint [0xD001]'}]},
}


class StepFailed(Exception):
    """Raised inside a step to mark it as failed."""
    pass


class StepResult(object):
    def __init__(self, number, step, outcome, message):
        self.number = number
        self.step = step
        self.outcome = outcome
        self.message = message

    def __repr__(self):
        return 'Step %d (%s): %s - %s' % (self.number, self.step.get('type'), self.outcome, self.message)


class ProcedureResult(object):
    """
    Attributes are:
    procedure_id: The 'id' of the procedure that was run
    outcome: PASS, WARN or FAIL
    message: Summary message
    steps: List of StepResult instances, one for each step that was run
    """
    def __init__(self, procedure_id):
        self.procedure_id = procedure_id
        self.outcome = PASS
        self.message = ''
        self.steps = []

    def __repr__(self):
        return 'ProcedureResult(%s: %s - %s)' % (self.procedure_id, self.outcome, self.message)

    @property
    def details(self):
        return '\n'.join([repr(s) for s in self.steps])


class ProcedureRunner(object):
    """
    Runs test procedures through a coordinator.RequestCoordinator. Call .stop() from another thread to end a
    running procedure early (it finishes with FAIL).
    """
    def __init__(self, coordinator, step_delay=STEP_DELAY, verify_delay=VERIFY_DELAY, timeout=None, logger=None):
        self.coordinator = coordinator
        self.step_delay = step_delay
        self.verify_delay = verify_delay
        self.timeout = timeout
        if logger is None:
            self.logger = logging.getLogger('TEST')
        else:
            self.logger = logger
        self.wants_stop = threading.Event()
        self.context = {}   # Values saved by 'store_as', keyed by name

    def stop(self):
        self.wants_stop.set()
        self.logger.warning('Test stop requested')

    def run(self, procedure):
        """
        Run every step in a procedure, in order.

        :param procedure: A procedure dictionary, or the id of one of the built-in PROCEDURES
        :return: An instance of ProcedureResult
        """
        if not isinstance(procedure, dict):
            procedure = PROCEDURES[procedure]
        steps = procedure['steps']
        result = ProcedureResult(procedure.get('id'))
        self.context = {}
        self.wants_stop.clear()
        self.logger.info('Starting test %s: %s' % (procedure.get('id'), procedure.get('title', '')))

        for number, step in enumerate(steps, 1):
            if self.wants_stop.is_set():
                result.steps.append(StepResult(number, step, FAIL, 'Test stopped'))
                self._fail(result, steps, 'Test stopped')
                return result

            self.logger.info('Step %d: %s' % (number, self._label(step)))
            try:
                outcome, message = self._run_step(step)
            except (StepFailed, IOError, ValueError) as e:
                if step.get('soft_fail'):
                    self.logger.warning('%s (continuing)' % e)
                    result.steps.append(StepResult(number, step, WARN, '(soft fail) %s' % e))
                else:
                    result.steps.append(StepResult(number, step, FAIL, str(e)))
                    self._fail(result, steps, str(e))
                    return result
            else:
                result.steps.append(StepResult(number, step, outcome, message))

            delay = step.get('delay_after', self.step_delay)
            if delay:
                self.wants_stop.wait(delay)

        if [s for s in result.steps if s.outcome == WARN]:
            result.outcome = WARN
            result.message = 'All steps passed, with warnings'
        else:
            result.outcome = PASS
            result.message = 'All steps passed'
        self.logger.info('Test %s finished: %s' % (result.procedure_id, result.outcome))
        return result

    def _fail(self, result, steps, message):
        self._run_restore_steps(steps)
        result.outcome = FAIL
        result.message = message
        self.logger.error('Test %s failed: %s' % (result.procedure_id, message))

    def _run_restore_steps(self, steps):
        """After a failure, run every restore_holding step that has a saved value to restore."""
        for step in steps:
            if step.get('type') != 'restore_holding':
                continue
            value = self.context.get(step['from'])
            if value is None:
                continue
            try:
                self._write(step['slave_id'], step['address'], value)
                self.logger.info('Cleanup: restored register 0x%04X to %d' % (step['address'], value))
            except (StepFailed, IOError, ValueError) as e:
                self.logger.error('Cleanup: failed to restore register 0x%04X: %s' % (step['address'], e))

    def _label(self, step):
        if 'label' in step:
            return step['label']
        address = step.get('address')
        if address is None:
            astring = '????'
        else:
            astring = '%04X' % address
        defaults = {'check_connection':'Check the serial connection',
                    'check_comm_settings':'Check the communication settings',
                    'read_holding':'FC03 read [0x%s]' % astring,
                    'read_input':'FC04 read [0x%s]' % astring,
                    'write_holding':'FC06 write [0x%s] = %s' % (astring, step.get('value', '?')),
                    'restore_holding':'FC06 restore [0x%s]' % astring,
                    'wait_countdown':'Wait %s seconds' % step.get('seconds'),
                    'delay':'Wait %s seconds' % step.get('seconds')}
        return defaults.get(step.get('type'), step.get('type'))

    def _read(self, function_code, slave_id, address):
        if function_code == framing.READ_INPUT_REGISTERS:
            frame = framing.build_read_input_registers(slave_id, address, 1)
        else:
            frame = framing.build_read_holding_registers(slave_id, address, 1)
        try:
            result = self.coordinator.send_and_wait(frame, timeout=self.timeout)
        except NotConnected as e:
            raise StepFailed(str(e))
        if not result.success:
            raise StepFailed('No valid FC%02d reply from [0x%04X] (%s)' % (function_code, address, result.error))
        return result.parsed.data[0]

    def _write(self, slave_id, address, value):
        frame = framing.build_write_single_register(slave_id, address, value)
        try:
            result = self.coordinator.send_and_wait(frame, timeout=self.timeout)
        except NotConnected as e:
            raise StepFailed(str(e))
        if not result.success:
            raise StepFailed('No valid FC06 reply from [0x%04X] (%s)' % (address, result.error))
        if result.frame != frame:
            raise StepFailed('FC06 reply is not an echo of the request')

    def _check_expect(self, value, step):
        expect = step.get('expect')
        if (expect is None) or (value == expect):
            return PASS, ''
        msg = 'Value mismatch (expected 0x%04X, got 0x%04X)' % (expect, value)
        if step.get('soft_match'):
            self.logger.warning('%s - communications OK' % msg)
            return WARN, msg
        raise StepFailed(msg)

    def _run_step(self, step):
        """
        Run a single step.

        :return: A tuple of (outcome, message), where outcome is PASS or WARN. Failures raise an exception.
        """
        stype = step.get('type')
        if stype == 'check_connection':
            if not self.coordinator.connected:
                raise StepFailed('Serial port not connected')
            return PASS, 'Connected'

        elif stype == 'check_comm_settings':
            transport = self.coordinator.transport
            if (self.coordinator.simulator is not None) or (transport is None):
                return PASS, 'Simulated device'
            msg = 'Baudrate %s, parity %s' % (transport.baudrate, transport.parity)
            if (transport.baudrate != RECOMMENDED_BAUDRATE) or (transport.parity != RECOMMENDED_PARITY):
                self.logger.warning('%s - recommended settings are %d, %s' % (msg, RECOMMENDED_BAUDRATE,
                                                                              RECOMMENDED_PARITY))
                return WARN, msg
            return PASS, msg

        elif stype in ('read_holding', 'read_input'):
            if stype == 'read_input':
                function_code = framing.READ_INPUT_REGISTERS
            else:
                function_code = framing.READ_HOLDING_REGISTERS
            value = self._read(function_code, step['slave_id'], step['address'])
            self.logger.info('FC%02d reply: 0x%04X (%d)' % (function_code, value, value))
            if step.get('store_as'):
                self.context[step['store_as']] = value
            outcome, msg = self._check_expect(value, step)
            return outcome, ('FC%02d [0x%04X] = 0x%04X %s' % (function_code, step['address'], value, msg)).strip()

        elif stype == 'write_holding':
            if 'value_from' in step:
                value = self.context.get(step['value_from'])
            else:
                value = step.get('value')
            if value is None:
                raise StepFailed('No value to write (value_from: %s)' % step.get('value_from'))
            self._write(step['slave_id'], step['address'], value)
            if step.get('verify_after_write'):
                if self.verify_delay:
                    time.sleep(self.verify_delay)
                readback = self._read(framing.READ_HOLDING_REGISTERS, step['slave_id'], step['address'])
                expected = step.get('expect_after_write', value)
                if readback != expected:
                    raise StepFailed('Write verify failed (expected %d, got %d)' % (expected, readback))
            return PASS, 'FC06 [0x%04X] = %d' % (step['address'], value)

        elif stype == 'restore_holding':
            value = self.context.get(step['from'])
            if value is None:
                self.logger.warning('No saved value (%s), skipping restore' % step['from'])
                return WARN, 'Restore skipped'
            self._write(step['slave_id'], step['address'], value)
            return PASS, 'Restored %d' % value

        elif stype == 'delay':
            self.wants_stop.wait(step.get('seconds', 0.5))
            return PASS, 'Waited %s seconds' % step.get('seconds', 0.5)

        elif stype == 'wait_countdown':
            message = step.get('message', 'Wait %s seconds' % step['seconds'])
            self.logger.warning(message)
            for remaining in range(int(step['seconds']), 0, -1):
                self.logger.info('%d seconds remaining' % remaining)
                if self.wants_stop.wait(1.0):
                    raise StepFailed('Test stopped')
            return PASS, message

        else:
            raise StepFailed('Unknown step type "%s"' % stype)
