# See LICENSE for licensing information

import logging
import sys
import traceback

def log_error():
    _, _, tb = sys.exc_info()
    if tb is not None:
        tb_info = traceback.extract_tb(tb)
        if len(tb_info) > 0:
            loc = tb_info[-1]
            logging.error("An error occurred in file '%s', at line %d, in func %s, in statement '%s'",
                          loc.filename, loc.lineno, loc.name, loc.line)
        else:
            logging.error("An error occurred, but the traceback has no info.")
    else:
        logging.error("An error occurred, but the traceback has already been cleared.")
    logging.debug(traceback.format_exc())

def summarise_string(long_str, max_len, ellipsis='...'):
    '''
    Summarise a string so it is a suitable length for logging.
    Returns a string that is at most min(max_len, len(long_str)) characters
    long, using ellipsis to replace one or more characters in the middle
    of the string if necessary.
    '''
    max_len = int(max_len)
    long_str = str(long_str)
    # using an empty ellipsis is ok, but it might confuse people
    if ellipsis is None:
        ellipsis = ''
    # check the easy case
    orig_len = len(long_str)
    if orig_len <= max_len:
        return long_str
    # handle some degenerate cases
    if max_len == 0 or orig_len == 0:
        return ''
    e_len = len(ellipsis)
    if e_len >= max_len:
        return ellipsis[0:max_len]
    # now we are left with the summary case
    content_len = max_len - e_len
    assert content_len > 0
    # if content_len is odd, put the extra character at the start
    start_len = (content_len + 1) // 2
    end_len = content_len // 2
    assert start_len + e_len + end_len == max_len
    summary_str = long_str[0:start_len] + ellipsis
    if end_len > 0:
        summary_str += long_str[-end_len:]
    return summary_str

SCRUBBED = '[scrubbed]'

# Lines that start with these prefixes carry secrets after the prefix
SECRET_LINE_PREFIXES = [
    'AUTHENTICATE ',
    'PrivateKey=',
    ]

def scrub_line(line):
    '''
    Return a copy of a control port line that is safe to log: passwords,
    cookie hashes, and private keys are replaced by SCRUBBED.
    '''
    for prefix in SECRET_LINE_PREFIXES:
        if line.startswith(prefix):
            return prefix + SCRUBBED
    if line.startswith('ADD_ONION ') and not line.startswith('ADD_ONION NEW:'):
        # ADD_ONION KeyType:KeyBlob Options...
        _, _, options = line[len('ADD_ONION '):].partition(' ')
        return 'ADD_ONION {} {}'.format(SCRUBBED, options).rstrip()
    # replies have a status code before the key
    if len(line) > 4 and line[:3].isdigit():
        scrubbed_rest = scrub_line(line[4:])
        if scrubbed_rest != line[4:]:
            return line[:4] + scrubbed_rest
    return line
