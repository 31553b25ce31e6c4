"""
Library for controlling Pololu Maestro servo controllers using the `Maestro
serial protocol <https://www.pololu.com/docs/pdf/0J40/maestro.pdf>`_.
"""

import logging
import weakref
from threading import RLock
from typing import List, NamedTuple, Optional, Sequence, Tuple, Union

import serial

from crc7 import crc7

log = logging.getLogger(__name__)

# General controller constants
MAX_SERVOS = 24
MAX_TARGET = 0x3FFF
MAX_DEVICE_NUMBER = 127
DEFAULT_DEVICE_NUMBER = 12
TICKS_PER_US = 4
DEFAULT_MIN_TARGET = 500 * TICKS_PER_US
DEFAULT_MAX_TARGET = 2500 * TICKS_PER_US

# Packet stuff
SYNC_BYTE = 0xAA

# Controller command numbers
_CMD_SET_TARGET = 0x84
_CMD_SET_SPEED = 0x87
_CMD_SET_ACCELERATION = 0x89
_CMD_SET_PWM = 0x8A
_CMD_GET_POSITION = 0x90
_CMD_GET_MOVING_STATE = 0x93
_CMD_SET_MULTIPLE_TARGETS = 0x9F
_CMD_GET_ERRORS = 0xA1
_CMD_GO_HOME = 0xA2
_CMD_STOP_SCRIPT = 0xA4
_CMD_RESTART_SCRIPT = 0xA7
_CMD_RESTART_SCRIPT_WITH_PARAMETER = 0xA8
_CMD_GET_SCRIPT_STATUS = 0xAE

# Error bitmap conditions, indexed by bit number
ERROR_CONDITIONS = (
    'serial signal error',
    'serial overrun error',
    'serial buffer full',
    'serial crc error',
    'serial protocol error',
    'serial timeout',
    'script stack error',
    'script call stack error',
    'script program counter error',
)

# Custom types
Bytes = Union[bytearray, bytes]


class MaestroError(Exception):
    pass


class TransportError(MaestroError):
    """The serial connection failed to read or write."""


class ShortReadError(MaestroError):
    """The controller returned fewer reply bytes than the command requires."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(
            f'short read: expected {expected} bytes; received {received}.')
        self.expected = expected
        self.received = received


class ChannelOutOfRangeError(MaestroError, ValueError):
    def __init__(self, channel: int) -> None:
        super().__init__(f'bad servo channel {channel}')
        self.channel = channel


class LimitViolationError(MaestroError, ValueError):
    """
    A target was outside a servo's limits and the servo rejects out-of-range
    targets. `limit` is the bound the target would have been clamped to; it
    is for diagnostics only and was not sent.
    """

    def __init__(self, message: str, target: int, limit: int,
                 channel: int) -> None:
        super().__init__(message)
        self.message = message
        self.target = target
        self.limit = limit
        self.channel = channel

    def __str__(self) -> str:
        return (f'{self.message} for channel {self.channel} '
                f'(target={self.target}, limit={self.limit})')


class ConfigError(MaestroError, ValueError):
    pass


class DeviceError(MaestroError):
    """
    Describes the fault conditions reported by the controller's error
    bitmap. This is returned by `decode_errors(...)`, not raised: reading the
    error bitmap succeeded, it is the controller that is reporting faults.
    """

    def __init__(self, bitmask: int, conditions: Sequence[str]) -> None:
        super().__init__(','.join(conditions))
        self.bitmask = bitmask
        self.conditions = tuple(conditions)


class ControllerConfig(NamedTuple):
    port: Optional[str] = None
    baudrate: int = 115200
    timeout: Optional[float] = 0.5
    serial_conn: object = None
    device_number: int = DEFAULT_DEVICE_NUMBER
    compact: bool = False
    crc: bool = False


class Servo:
    """Represents a single channel of a Maestro controller."""

    def __init__(self, channel: int, controller: 'Controller',
                 name: str = None) -> None:
        """
        This is not meant to be instantiated directly. Use
        `Controller.register_channel(...)` instead.
        """

        self._channel = channel
        self._controller = weakref.ref(controller)
        self.name = name
        self._min_target = DEFAULT_MIN_TARGET
        self._max_target = DEFAULT_MAX_TARGET

        # False means out-of-range targets are rejected instead of clamped
        self.clamp = False

    def __str__(self) -> str:
        name = self.name or 'Servo'
        return f'{name} (channel {self.channel})'

    @property
    def channel(self) -> int:
        return self._channel

    @property
    def controller(self) -> 'Controller':
        controller = self._controller()
        if controller is None:
            raise MaestroError(f'{self} has outlived its controller.')

        return controller

    @property
    def min_target(self) -> int:
        return self._min_target

    @property
    def max_target(self) -> int:
        return self._max_target

    def set_clamp(self, clamp: bool) -> None:
        """
        :param clamp: If True, out-of-range targets are clamped to the servo
            limits. If False, they raise LimitViolationError.
        """

        self.clamp = bool(clamp)

    def set_limits(self, min_target: int, max_target: int) -> None:
        """
        Sets the range of targets this servo accepts, in quarter-microseconds.

        :raises ConfigError: If the limits are not accepted by
            limit_order_accepted(), or either is negative or greater than
            MAX_TARGET.
        """

        if min_target < 0:
            raise ConfigError('min < 0')
        if max_target < 0:
            raise ConfigError('max < 0')
        if not limit_order_accepted(min_target, max_target):
            raise ConfigError('max > min')
        if min_target > MAX_TARGET:
            raise ConfigError(f'min > {MAX_TARGET}')
        if max_target > MAX_TARGET:
            raise ConfigError(f'max > {MAX_TARGET}')

        self._min_target = min_target
        self._max_target = max_target

    def check_target(self, target: int) -> int:
        """
        :return: The target value that should be sent for `target`.
        :raises LimitViolationError: If `target` is out of range and this
            servo is not clamping.
        """

        if target < self._min_target:
            if not self.clamp:
                raise LimitViolationError(
                    'target too low', target, self._min_target, self.channel)
            return self._min_target

        if target > self._max_target:
            if not self.clamp:
                raise LimitViolationError(
                    'target too high', target, self._max_target, self.channel)
            return self._max_target

        return target

    def _command(self, command: int) -> bytearray:
        return self.controller._preamble(command, channel=self.channel)

    def set_target(self, target: int) -> None:
        """
        Tells the servo to move to `target`, in quarter-microseconds of pulse
        width. Nothing is sent if the target fails check_target().
        """

        target = self.check_target(target)

        packet = self._command(_CMD_SET_TARGET)
        packet.extend(encode_14bit(target))
        self.controller._write_command(packet)

    def set_speed(self, speed: int) -> None:
        """Sets the servo's maximum speed; 0 means no limit."""

        packet = self._command(_CMD_SET_SPEED)
        packet.extend(encode_14bit(speed))
        self.controller._write_command(packet)

    def set_acceleration(self, acceleration: int) -> None:
        """Sets the servo's maximum acceleration; 0 means no limit."""

        packet = self._command(_CMD_SET_ACCELERATION)
        packet.extend(encode_14bit(acceleration))
        self.controller._write_command(packet)

    def set_pwm(self, on_time: int, period: int) -> None:
        """
        Sets the on time and period of the PWM output on this channel.

        :param on_time: On time, in units of 1/48 microseconds.
        :param period: Period, in units of 1/48 microseconds.
        """

        packet = self._command(_CMD_SET_PWM)
        packet.extend(encode_14bit(on_time))
        packet.extend(encode_14bit(period))
        self.controller._write_command(packet)

    def get_position(self) -> int:
        """
        Gets the position the controller is currently sending to the servo,
        in quarter-microseconds. This is not read back from the servo itself.
        """

        controller = self.controller
        with controller._serial_conn_lock:
            controller._write_command(self._command(_CMD_GET_POSITION))
            low, high = controller._read_response(2)

        return low + (high << 8)


class Controller:
    """
    Controls a Pololu Maestro servo controller over a serial connection.

    Example usage::

        with Controller('/dev/ttyACM0', crc=True) as controller:
            servo = controller.register_channel(0, name='pan')

            # Move to the 1500 us position, in quarter-microseconds
            servo.set_target(1500 * TICKS_PER_US)
    """

    def __init__(
            self,
            port: Optional[str] = None,
            timeout: Optional[float] = 0.5,
            baudrate: int = 115200,
            serial_conn=None,
            device_number: int = DEFAULT_DEVICE_NUMBER,
            compact: bool = False,
            crc: bool = False
    ) -> None:
        """
        :param port: The serial port to connect to.
            Ignored if `serial_conn` is given.
        :param timeout: How long to wait for a reply from the controller
            before timing out. None means never timeout.
            Ignored if `serial_conn` is given.
        :param baudrate: The baud rate to use.
            Ignored if `serial_conn` is given.
        :param serial_conn: Serial connection object to use. Must have at
            least `read(...)` and `write(...)` methods.
        :param device_number: Device number of the controller, in the range
            [0, 127]. Only sent when `compact` is False.
        :param compact: Use the compact protocol, which omits the device
            number. Only valid when this is the only device on the serial
            line.
        :param crc: Append a CRC-7 byte to every command. The controller
            must be configured to expect it.
        """

        if device_number < 0 or device_number > MAX_DEVICE_NUMBER:
            raise ConfigError(
                f'device_number must be in range [0, {MAX_DEVICE_NUMBER}]; '
                f'got {device_number}.')

        self._device_number = device_number
        self._compact = compact
        self._crc = crc
        self._servos: List[Optional[Servo]] = [None] * MAX_SERVOS

        if serial_conn:
            self._serial_conn = serial_conn
            self._close_on_exit = False
        else:
            try:
                self._serial_conn = serial.Serial(
                    port=port, baudrate=baudrate, timeout=timeout)
            except (serial.SerialException, OSError) as e:
                raise TransportError(f'Could not open {port}: {e}') from e
            self._close_on_exit = True

        self._serial_conn_lock = RLock()

        # Lets the controller detect the baud rate
        try:
            self._write(bytes((SYNC_BYTE,)))
        except MaestroError:
            if self._close_on_exit:
                self._serial_conn.close()
            raise

    @classmethod
    def from_config(cls, config: ControllerConfig) -> 'Controller':
        return cls(**config._asdict())

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._close_on_exit:
            with self._serial_conn_lock:
                self.serial_conn.close()

    @property
    def serial_conn(self):
        return self._serial_conn

    @property
    def device_number(self) -> int:
        return self._device_number

    @property
    def compact(self) -> bool:
        return self._compact

    @property
    def crc(self) -> bool:
        return self._crc

    @property
    def servos(self) -> Tuple[Optional[Servo], ...]:
        return tuple(self._servos)

    def _preamble(self, command: int, channel: int = None) -> bytearray:
        # Compact protocol:   | Command | [Channel] |
        # Addressed protocol: | 0xAA | Device | Command & 0x7F | [Channel] |
        if self._compact:
            packet = bytearray((command,))
        else:
            packet = bytearray((SYNC_BYTE, self._device_number, command & 0x7F))

        if channel is not None:
            packet.append(channel)

        return packet

    def _write(self, data: Bytes) -> None:
        log.debug('tx %s', data.hex())

        try:
            written = self.serial_conn.write(data)
        except (serial.SerialException, OSError) as e:
            raise TransportError(f'Write failed: {e}') from e

        if written is not None and written != len(data):
            raise TransportError(
                f'Write failed: wrote {written} of {len(data)} bytes.')

    def _write_command(self, packet: bytearray) -> None:
        if self._crc:
            packet.append(crc7(0, packet) & 0x7F)

        with self._serial_conn_lock:
            self._write(packet)

    def _read_response(self, size: int) -> bytes:
        with self._serial_conn_lock:
            try:
                response = self.serial_conn.read(size)
            except (serial.SerialException, OSError) as e:
                raise TransportError(f'Read failed: {e}') from e

        if len(response) != size:
            raise ShortReadError(size, len(response))

        log.debug('rx %s', bytes(response).hex())
        return response

    def _query(self, command: int, size: int) -> bytes:
        with self._serial_conn_lock:
            self._write_command(self._preamble(command))
            return self._read_response(size)

    def register_channel(self, channel: int, name: str = None) -> Servo:
        """
        Creates a Servo for `channel` with the default limits and reject
        policy, replacing any Servo previously registered on that channel.
        """

        if channel < 0 or channel >= MAX_SERVOS:
            raise ChannelOutOfRangeError(channel)

        servo = Servo(channel, self, name=name)
        self._servos[channel] = servo
        log.debug('Registered %s', servo)

        return servo

    def get_servo(self, channel: int) -> Optional[Servo]:
        """:return: The Servo registered on `channel`, or None."""

        if channel < 0 or channel >= MAX_SERVOS:
            raise ChannelOutOfRangeError(channel)

        return self._servos[channel]

    def get_moving_state(self) -> bool:
        """
        :return: True if any servo has not reached its target yet. True does
            not prove the servos are still moving; False does not prove they
            have settled.
        """

        return self._query(_CMD_GET_MOVING_STATE, 1)[0] != 0

    def get_errors(self) -> int:
        """
        Reads and clears the controller's error bitmap.
        Use decode_errors() to turn it into a DeviceError.

        Note: Each reply byte is masked to 7 bits, but the high byte is
        shifted by 8, not by 7 as in decode_14bit(), so that bit 8 is the
        first bit of the second byte.
        """

        low, high = self._query(_CMD_GET_ERRORS, 2)
        return (low & 0x7F) + ((high & 0x7F) << 8)

    def get_device_error(self) -> Optional[DeviceError]:
        """:return: The decoded error bitmap, or None if there are no errors."""

        return decode_errors(self.get_errors())

    def go_home(self) -> None:
        """Sends all servos to their home positions."""
        self._write_command(self._preamble(_CMD_GO_HOME))

    def stop_script(self) -> None:
        self._write_command(self._preamble(_CMD_STOP_SCRIPT))

    def restart_script(self, subroutine: int) -> None:
        """Restarts the script at the given subroutine number."""

        _check_7bit('subroutine', subroutine)

        packet = self._preamble(_CMD_RESTART_SCRIPT)
        packet.append(subroutine)
        self._write_command(packet)

    def restart_script_with_parameter(self, subroutine: int,
                                      parameter: int) -> None:
        """
        Restarts the script at the given subroutine number, with `parameter`
        pushed onto its stack.
        """

        _check_7bit('subroutine', subroutine)

        packet = self._preamble(_CMD_RESTART_SCRIPT_WITH_PARAMETER)
        packet.append(subroutine)
        packet.extend(encode_14bit(parameter))
        self._write_command(packet)

    def get_script_status(self) -> bool:
        """:return: True if the script is running."""

        return self._query(_CMD_GET_SCRIPT_STATUS, 1)[0] == 0

    def set_targets(self, start_channel: int, targets: Sequence[int]) -> None:
        """
        Sets the targets of consecutive channels in one command, starting at
        `start_channel`. Every channel must have a registered Servo, and every
        target is checked against its Servo's limits before anything is sent;
        if any check fails, nothing is sent.

        :raises ChannelOutOfRangeError: If a channel is out of range or has no
            registered Servo.
        :raises LimitViolationError: If a target is rejected by its Servo.
        """

        if not targets:
            return

        values = bytearray()
        for i, target in enumerate(targets):
            channel = start_channel + i
            if channel < 0 or channel >= MAX_SERVOS:
                raise ChannelOutOfRangeError(channel)

            servo = self._servos[channel]
            if servo is None:
                raise ChannelOutOfRangeError(channel)

            values.extend(encode_14bit(servo.check_target(target)))

        packet = self._preamble(_CMD_SET_MULTIPLE_TARGETS)
        packet.append(len(targets))
        packet.append(start_channel)
        packet.extend(values)
        self._write_command(packet)


def limit_order_accepted(min_target: int, max_target: int) -> bool:
    """
    The ordering rule Servo.set_limits() applies to a (min, max) pair.

    Note: This accepts the pair only when max_target is NOT greater than
    min_target, which is the reverse of what the names suggest. It is kept
    as-is until the intended rule is confirmed.
    """

    return not max_target > min_target


def decode_errors(bitmask: int) -> Optional[DeviceError]:
    """
    Converts an error bitmap from Controller.get_errors() into a DeviceError
    naming every set condition, in bit order.

    :return: The DeviceError, or None if no error bits are set.
    """

    conditions = [condition for bit, condition in enumerate(ERROR_CONDITIONS)
                  if bitmask & (1 << bit)]
    if not conditions:
        return None

    return DeviceError(bitmask, conditions)


def lo(value: int) -> int:
    return value & 0x7F


def hi(value: int) -> int:
    return (value >> 7) & 0x7F


def encode_14bit(value: int) -> bytes:
    """:return: `value` as two 7-bit bytes, low bits first."""

    if value < 0 or value > MAX_TARGET:
        raise ValueError(
            f'value must be in range [0, {MAX_TARGET}]; got {value}.')

    return bytes((lo(value), hi(value)))


def decode_14bit(low: int, high: int) -> int:
    return low + (high << 7)


def _check_7bit(name: str, value: int) -> None:
    if value < 0 or value > 0x7F:
        raise ValueError(f'{name} must be in range [0, 127]; got {value}.')
