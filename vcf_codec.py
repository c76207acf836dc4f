import json
import logging
import re
import uuid
from collections.abc import Mapping
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import ftfy

# Constants
LOGGER_NAME = 'vcf_codec'
VCF_VERSION = '3.0'
PREFIX = 'BEGIN:VCARD'
POSTFIX = 'END:VCARD'
EXTENSION_PREFIX = 'X-'
FOLD_WIDTH = 75
CRLF = '\r\n'
REQUIRED_FIELDS = ['fn']
COMMA_SEPARATED_FIELDS = ['nickname', 'related', 'categories', 'pid']
LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
ESCAPABLE = (';', ',')

LINE_BREAK_RE = re.compile(r'\r\n|\r|\n')

Entry = Dict[str, Any]
Record = Dict[str, List[Entry]]

def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None) -> logging.Logger:
    """Setup logging configuration."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # File output only when explicitly requested
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger

class VCFConfig:
    """Configuration management for the vCard codec."""

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self.config = self.load_config(overrides)

    def load_config(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Build the configuration from defaults and caller overrides."""
        default_config = {
            'log_level': None,
            'vcf_version': VCF_VERSION,
            'fold_width': FOLD_WIDTH,
            'line_break': CRLF,
            'required_fields': list(REQUIRED_FIELDS),
            'comma_separated_fields': list(COMMA_SEPARATED_FIELDS),
            'repair_text': False,
            'text_replacements': {},
        }
        if overrides:
            default_config.update(overrides)
        return default_config

    @classmethod
    def from_json(cls, text: str) -> 'VCFConfig':
        """Load configuration overrides from a JSON document.

        Invalid JSON, or JSON that is not an object, is logged and the
        defaults are used instead.
        """
        logger = logging.getLogger(LOGGER_NAME)
        try:
            overrides = json.loads(text)
        except ValueError as e:
            logger.error(f"Error loading config: {e}")
            return cls()
        if not isinstance(overrides, dict):
            logger.error(f"Error loading config: expected a JSON object, got {type(overrides).__name__}")
            return cls()
        return cls(overrides)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self.config.get(key, default)

    def to_json(self) -> str:
        """Serialize configuration to JSON."""
        return json.dumps(self.config, indent=4, ensure_ascii=False)

    def validate(self, logger: logging.Logger) -> bool:
        """
        Validates the configuration values.
        Returns True if valid, False otherwise.
        """
        valid = True

        # None leaves the logger level untouched
        log_level = self.get('log_level')
        if log_level is not None and (not isinstance(log_level, str) or log_level.upper() not in LOG_LEVELS):
            logger.error(f"Invalid log_level '{log_level}'. Must be one of: {', '.join(LOG_LEVELS)}.")
            valid = False

        vcf_version = self.get('vcf_version')
        if not isinstance(vcf_version, str) or not vcf_version:
            logger.error(f"Invalid vcf_version '{vcf_version}'. Must be a non-empty string.")
            valid = False

        fold_width = self.get('fold_width')
        if isinstance(fold_width, bool) or not isinstance(fold_width, int) or fold_width < 5:
            logger.error(f"Invalid fold_width '{fold_width}'. Must be an integer of at least 5.")
            valid = False

        if self.get('line_break') not in (CRLF, '\n'):
            logger.error(f"Invalid line_break {self.get('line_break')!r}. Must be CRLF or LF.")
            valid = False

        for key in ('required_fields', 'comma_separated_fields'):
            value = self.get(key)
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                logger.error(f"Invalid {key} '{value}'. Must be a list of property names.")
                valid = False

        replacements = self.get('text_replacements')
        if not isinstance(replacements, dict):
            logger.error(f"Invalid text_replacements '{replacements}'. Must be a mapping.")
            valid = False

        return valid

def normalize_property_name(name: str) -> str:
    """Lowercase a property name unless it is an extension (X-) name."""
    if name.startswith(EXTENSION_PREFIX):
        return name
    return name.lower()

def unfold_lines(text: str) -> Iterator[str]:
    """Unfold vCard text into logical lines.

    Blank lines and the BEGIN/END marker lines are dropped. A line starting
    with a space or tab continues the previous one; its leading whitespace
    is stripped and the rest appended with no separator.
    """
    lines = LINE_BREAK_RE.split(text)
    count = len(lines)
    i = 0
    while i < count:
        line = lines[i]
        i += 1
        if not line or line.upper() in (PREFIX, POSTFIX):
            continue
        # All leading whitespace goes, so a fold that lands on a space loses it
        while i < count and lines[i][:1] in (' ', '\t'):
            line += lines[i].lstrip()
            i += 1
        yield line

def has_unescaped(value: str, delimiter: str) -> bool:
    """Check for a delimiter at position 0 or not preceded by a backslash."""
    prev = ''
    for char in value:
        if char == delimiter and prev != '\\':
            return True
        prev = char
    return False

def split_escaped(value: str, delimiter: Optional[str]) -> List[str]:
    """Split on unescaped delimiters, unescaping \\; and \\, as it goes.

    Other backslashes are kept literally. With no delimiter the value is only
    unescaped and returned as a single segment.
    """
    parts: List[str] = []
    current: List[str] = []
    i = 0
    length = len(value)
    while i < length:
        char = value[i]
        if char == '\\' and i + 1 < length and value[i + 1] in ESCAPABLE:
            current.append(value[i + 1])
            i += 2
            continue
        if delimiter is not None and char == delimiter:
            parts.append(''.join(current))
            current = []
        else:
            current.append(char)
        i += 1
    parts.append(''.join(current))
    return parts

def unescape_value(value: str) -> str:
    """Remove \\; and \\, escapes from a value."""
    return split_escaped(value, None)[0]

def escape_value(value: Any) -> str:
    """Escape newline, semicolon and comma for output."""
    if value is None:
        return ''
    return str(value).replace('\n', '\\n').replace(';', '\\;').replace(',', '\\,')

def escape_type_value(value: Any) -> str:
    """Escape a TYPE parameter value; commas stay as token separators."""
    if value is None:
        return ''
    return str(value).replace('\n', '\\n').replace(';', '\\;')

class VCFParser:
    """Handles decoding of vCard text into a Record."""

    def __init__(self, config: VCFConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def _fix_text(self, text: str) -> str:
        """Repair mojibake with ftfy, then apply configured literal replacements."""
        if not text:
            return text
        text = ftfy.fix_text(text)
        custom = self.config.get('text_replacements', {}) or {}
        for k, v in custom.items():
            if k and isinstance(k, str) and v is not None:
                text = text.replace(k, str(v))
        return text

    def parse_params(self, params: List[str]) -> Dict[str, List[str]]:
        """Collect NAME=value parameters into a mapping of lists."""
        meta: Dict[str, List[str]] = {}
        for param in params:
            pieces = param.split('=')
            name = pieces[0].lower()
            if not name:
                continue
            # Only the text between the first and second '=' is kept
            value = pieces[1] if len(pieces) > 1 else ''
            meta.setdefault(name, []).append(value)
        return meta

    def normalize_value(self, raw_value: str) -> Union[str, List[str]]:
        """Turn a raw field into a scalar or a list of segments.

        Semicolon wins over comma: a value with any unescaped ';' is split on
        ';' even if it also holds unescaped commas.
        """
        value = raw_value.replace('\\n', '\n')

        if has_unescaped(value, ';'):
            result: Union[str, List[str]] = split_escaped(value, ';')
        elif has_unescaped(value, ','):
            result = split_escaped(value, ',')
        else:
            result = unescape_value(value)

        if self.config.get('repair_text', False):
            if isinstance(result, list):
                result = [self._fix_text(part) for part in result]
            else:
                result = self._fix_text(result)
        return result

    def parse_property_line(self, line: str) -> Tuple[str, Entry]:
        """Parse a single logical vCard line into (name, entry)."""
        self.logger.debug(f"Processing line: {line}")

        # Colons are never escaped, so the first one is always the delimiter
        key, _, raw_value = line.partition(':')
        meta: Dict[str, List[str]] = {}
        namespace = ''

        if ';' in key:
            pieces = split_escaped(key, ';')
            key = pieces[0]
            meta = self.parse_params(pieces[1:])

        # Grouped properties: item1.EMAIL
        if '.' in key:
            namespace, key = key.split('.', 1)

        entry: Entry = {'value': self.normalize_value(raw_value)}
        if meta:
            entry['meta'] = meta
        if namespace:
            entry['namespace'] = namespace

        return normalize_property_name(key), entry

    def parse(self, text: str) -> Record:
        """Decode the lines of one vCard into a Record."""
        record: Record = {}
        for line in unfold_lines(text):
            name, entry = self.parse_property_line(line)
            record.setdefault(name, []).append(entry)

        entries = sum(len(v) for v in record.values())
        self.logger.info(f"Decoded {len(record)} properties ({entries} entries)")
        return record

class VCFWriter:
    """Handles encoding of a Record into vCard text."""

    def __init__(self, config: VCFConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def inject_required_fields(self, record: Record) -> Record:
        """Add VERSION and UID entries to the record in place if absent.

        The caller's record is mutated and also returned.
        """
        if record.get('version') is None:
            record['version'] = [{'value': self.config.get('vcf_version', VCF_VERSION)}]
            self.logger.debug("Injected VERSION entry")
        if record.get('uid') is None:
            record['uid'] = [{'value': str(uuid.uuid4())}]
            self.logger.debug("Injected UID entry")
        return record

    def _should_skip(self, name: str, entry: Any) -> bool:
        """Apply the skip rules for a single entry."""
        if not isinstance(entry, Mapping):
            self.logger.debug(f"Skipping malformed entry for {name}: {entry!r}")
            return True

        value = entry.get('value')
        if value is None:
            self.logger.debug(f"Skipping {name}: undefined value")
            return True

        if value == '' and name.lower() not in self.config.get('required_fields', REQUIRED_FIELDS):
            self.logger.debug(f"Skipping {name}: empty value")
            return True

        if isinstance(value, (list, tuple)):
            if all(v is None for v in value):
                self.logger.debug(f"Skipping {name}: list holds no values")
                return True
        elif not isinstance(value, str):
            self.logger.debug(f"Skipping {name}: unsupported value type {type(value).__name__}")
            return True

        return False

    def format_params(self, name: str, meta: Any) -> str:
        """Render ;NAME=value pairs for an entry's meta mapping."""
        if not isinstance(meta, Mapping):
            if meta is not None:
                self.logger.debug(f"Ignoring malformed meta for {name}: {meta!r}")
            return ''

        out = ''
        for meta_key, meta_values in meta.items():
            # values of meta parameters must be a list
            if not isinstance(meta_values, (list, tuple)):
                self.logger.debug(f"Ignoring meta {meta_key!r} for {name}: not a list")
                continue
            if not meta_key or not isinstance(meta_key, str):
                continue
            param_name = meta_key.upper()
            for meta_value in meta_values:
                if param_name == 'TYPE':
                    out += f";{escape_value(param_name)}={escape_type_value(meta_value)}"
                else:
                    out += f";{escape_value(param_name)}={escape_value(meta_value)}"
        return out

    def format_value(self, name: str, value: Union[str, List[Any]]) -> str:
        """Escape a scalar, or escape and join a list value."""
        if isinstance(value, str):
            return escape_value(value)
        comma_fields = self.config.get('comma_separated_fields', COMMA_SEPARATED_FIELDS)
        separator = ',' if name.lower() in comma_fields else ';'
        return separator.join(escape_value(item) for item in value)

    def build_line(self, name: str, entry: Entry) -> str:
        """Assemble one unfolded content line."""
        line = ''
        if entry.get('namespace'):
            line += f"{entry['namespace']}."
        line += name if name.startswith(EXTENSION_PREFIX) else name.upper()
        line += self.format_params(name, entry.get('meta'))
        line += ':'
        line += self.format_value(name, entry['value'])
        return line

    @staticmethod
    def _take_octets(text: str, limit: int) -> Tuple[str, str]:
        """Split off the longest prefix of text fitting in limit UTF-8 octets."""
        size = 0
        for index, char in enumerate(text):
            size += len(char.encode('utf-8'))
            if size > limit:
                # Always make progress, even if one character exceeds the limit
                index = max(index, 1)
                return text[:index], text[index:]
        return text, ''

    def fold_line(self, line: str) -> List[str]:
        """Fold a content line: first chunk of fold_width octets, then
        continuation chunks of fold_width - 1 octets prefixed with a space."""
        width = self.config.get('fold_width', FOLD_WIDTH)
        if len(line.encode('utf-8')) <= width:
            return [line]

        first, rest = self._take_octets(line, width)
        folded = [first]
        while rest:
            chunk, rest = self._take_octets(rest, width - 1)
            folded.append(' ' + chunk)
        self.logger.debug(f"Folded line into {len(folded)} segments")
        return folded

    def write(self, record: Record, inject_required_fields: bool = False) -> str:
        """Encode a Record as vCard text."""
        lines = [PREFIX]

        if not isinstance(record, Mapping):
            self.logger.warning(f"Cannot encode {type(record).__name__}; expected a mapping")
        else:
            if inject_required_fields:
                self.inject_required_fields(record)

            written = 0
            for name, entries in record.items():
                if not isinstance(entries, (list, tuple)):
                    self.logger.debug(f"Skipping {name}: entries are not a list")
                    continue
                for entry in entries:
                    if self._should_skip(name, entry):
                        continue
                    lines.extend(self.fold_line(self.build_line(name, entry)))
                    written += 1
            self.logger.info(f"Encoded {written} entries")

        lines.append(POSTFIX)
        return self.config.get('line_break', CRLF).join(lines)

class VCFCodec:
    """Main class for vCard decode/encode operations."""

    def __init__(self, config: Optional[VCFConfig] = None, logger: Optional[logging.Logger] = None):
        self.config = config or VCFConfig()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        if not self.validate_configuration():
            raise ValueError("Invalid vCard codec configuration")
        log_level = self.config.get('log_level')
        if log_level:
            # Level only; handlers stay with the caller or setup_logging
            self.logger.setLevel(getattr(logging, log_level.upper()))
        self.parser = VCFParser(self.config, self.logger)
        self.writer = VCFWriter(self.config, self.logger)

    def validate_configuration(self) -> bool:
        """Validate the codec configuration, logging each problem."""
        return self.config.validate(self.logger)

    def _coerce_text(self, data: Any) -> Optional[str]:
        """Turn decode input into text; bytes are tried as UTF-8, then Latin-1."""
        if isinstance(data, str):
            return data
        if isinstance(data, (bytes, bytearray)):
            try:
                return bytes(data).decode('utf-8-sig')
            except UnicodeDecodeError:
                self.logger.warning("Input is not valid UTF-8, decoding as Latin-1")
                return bytes(data).decode('latin-1')
        self.logger.warning(f"Cannot decode {type(data).__name__}; expected str or bytes")
        return None

    def decode(self, data: Union[str, bytes]) -> Record:
        """Decode vCard text (or bytes) into a Record. Never raises."""
        text = self._coerce_text(data)
        if text is None:
            return {}
        return self.parser.parse(text)

    def encode(self, record: Record, inject_required_fields: bool = False) -> str:
        """Encode a Record as vCard text.

        With inject_required_fields, VERSION and UID are added to the given
        record in place when absent.
        """
        return self.writer.write(record, inject_required_fields)

def decode(data: Union[str, bytes], config: Optional[VCFConfig] = None) -> Record:
    """Decode vCard text into a Record."""
    return VCFCodec(config).decode(data)

def encode(record: Record, inject_required_fields: bool = False, config: Optional[VCFConfig] = None) -> str:
    """Encode a Record as vCard text."""
    return VCFCodec(config).encode(record, inject_required_fields)

parse = decode
generate = encode
